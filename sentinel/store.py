"""
Console Store

Append-mostly persistence for the records the console writes: contracts,
policies, transactions, simulation reports, alerts, audit logs,
allowances and payments. PostgreSQL (one JSONB document table) when a
DATABASE_URL is configured and reachable, in-memory otherwise.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import psycopg2
from psycopg2.extras import Json

from sentinel.policy import DEFAULT_POLICIES, is_enforcing

logger = logging.getLogger(__name__)

Record = dict[str, Any]

CONTRACTS = "contracts"
POLICIES = "policies"
TRANSACTIONS = "transactions"
SIMULATIONS = "simulations"
ALERTS = "alerts"
AUDIT_LOGS = "audit_logs"
ALLOWANCES = "allowances"
PAYMENTS = "payments"


class DuplicateRecordError(ValueError):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Shared behaviour
# ---------------------------------------------------------------------------

class BaseStore:
    """
    Record-level operations shared by every backend. Subclasses provide
    the storage primitives (_insert, _list, _get, _find, _update,
    _delete).
    """

    backend_name = "base"

    def __init__(self):
        self._policy_lock = threading.RLock()
        self._enforce_mode = True

    # -- primitives (overridden) -------------------------------------------

    def _insert(self, kind: str, body: Record) -> Record:
        raise NotImplementedError

    def _list(self, kind: str, limit: Optional[int] = None,
              newest_first: bool = True) -> list[Record]:
        raise NotImplementedError

    def _get(self, kind: str, record_id: str) -> Optional[Record]:
        raise NotImplementedError

    def _find(self, kind: str, field: str, value: Any) -> Optional[Record]:
        raise NotImplementedError

    def _update(self, kind: str, record_id: str, updates: Record) -> Optional[Record]:
        raise NotImplementedError

    def _delete(self, kind: str, record_id: str) -> bool:
        raise NotImplementedError

    def _new_record(self, body: Record) -> Record:
        record = dict(body)
        record["id"] = str(uuid4())
        record["createdAt"] = _now_iso()
        return record

    # -- policies ------------------------------------------------------------

    # Policy writes and the flag refresh happen under one (reentrant) lock.

    def seed_defaults(self) -> None:
        with self._policy_lock:
            if not self._list(POLICIES):
                logger.info("Seeding initial policies...")
                for policy in DEFAULT_POLICIES:
                    self._insert(POLICIES, self._new_record(policy.to_record()))
            self._refresh_enforce_mode()

    def _refresh_enforce_mode(self) -> None:
        with self._policy_lock:
            self._enforce_mode = is_enforcing(self._list(POLICIES, newest_first=False))

    def enforce_mode(self) -> bool:
        """Materialized global mode, recomputed on every policy mutation."""
        with self._policy_lock:
            return self._enforce_mode

    def list_policies(self) -> list[Record]:
        return self._list(POLICIES, newest_first=False)

    def add_policy(self, policy: Record) -> Record:
        with self._policy_lock:
            record = self._insert(POLICIES, self._new_record(policy))
            self._refresh_enforce_mode()
        return record

    def update_policy(self, policy_id: str, enabled: bool, mode: str) -> Optional[Record]:
        with self._policy_lock:
            record = self._update(POLICIES, policy_id, {"enabled": enabled, "mode": mode})
            self._refresh_enforce_mode()
        return record

    def delete_policy(self, policy_id: str) -> bool:
        with self._policy_lock:
            deleted = self._delete(POLICIES, policy_id)
            self._refresh_enforce_mode()
        return deleted

    def set_all_policy_modes(self, mode: str) -> int:
        count = 0
        with self._policy_lock:
            for policy in self.list_policies():
                self._update(POLICIES, policy["id"], {"mode": mode})
                count += 1
            self._refresh_enforce_mode()
        return count

    # -- contracts -------------------------------------------------------------

    def list_contracts(self) -> list[Record]:
        return self._list(CONTRACTS)

    def get_contract_by_address(self, address: str) -> Optional[Record]:
        wanted = address.lower()
        for contract in self._list(CONTRACTS):
            if contract.get("address", "").lower() == wanted:
                return contract
        return None

    def add_contract(self, contract: Record) -> Record:
        if self.get_contract_by_address(contract["address"]) is not None:
            raise DuplicateRecordError(f"Contract {contract['address']} already exists")
        return self._insert(CONTRACTS, self._new_record(contract))

    # -- transactions ----------------------------------------------------------

    def list_transactions(self, limit: int = 50) -> list[Record]:
        return self._list(TRANSACTIONS, limit=limit)

    def get_transaction(self, tx_id: str) -> Optional[Record]:
        return self._get(TRANSACTIONS, tx_id) or self._find(TRANSACTIONS, "intent_id", tx_id)

    def add_transaction(self, tx: Record) -> Record:
        body = {"status": "PENDING", "severity": "LOW", "on_chain": False, **tx}
        return self._insert(TRANSACTIONS, self._new_record(body))

    def update_transaction(self, tx_id: str, updates: Record) -> Optional[Record]:
        existing = self.get_transaction(tx_id)
        if existing is None:
            return None
        return self._update(TRANSACTIONS, existing["id"], updates)

    # -- simulations / alerts / audit / allowances / payments ----------------

    def list_simulations(self, limit: int = 50) -> list[Record]:
        return self._list(SIMULATIONS, limit=limit)

    def add_simulation(self, report: Record) -> Record:
        return self._insert(SIMULATIONS, self._new_record(report))

    def list_alerts(self, limit: int = 100) -> list[Record]:
        return self._list(ALERTS, limit=limit)

    def add_alert(self, alert: Record) -> Record:
        body = {"severity": "LOW", "acknowledged": False, **alert}
        return self._insert(ALERTS, self._new_record(body))

    def update_alert(self, alert_id: str, updates: Record) -> Optional[Record]:
        return self._update(ALERTS, alert_id, updates)

    def list_audit_logs(self, limit: int = 200) -> list[Record]:
        return self._list(AUDIT_LOGS, limit=limit)

    def add_audit_log(self, entry: Record) -> Record:
        return self._insert(AUDIT_LOGS, self._new_record(entry))

    def list_allowances(self) -> list[Record]:
        return self._list(ALLOWANCES)

    def add_allowance(self, allowance: Record) -> Record:
        body = {"risk_score": 0, **allowance}
        return self._insert(ALLOWANCES, self._new_record(body))

    def list_payments(self) -> list[Record]:
        return self._list(PAYMENTS)

    def add_payment(self, payment: Record) -> Record:
        body = {"verifiedAt": _now_iso(), **payment}
        return self._insert(PAYMENTS, self._new_record(body))

    # -- dashboard -------------------------------------------------------------

    def dashboard_stats(self) -> dict[str, Any]:
        transactions = self._list(TRANSACTIONS)
        alerts = self._list(ALERTS)
        contracts = self._list(CONTRACTS)

        def count(records: list[Record], key: str, value: str) -> int:
            return sum(1 for r in records if r.get(key) == value)

        return {
            "totalTransactions": len(transactions),
            "pendingTransactions": count(transactions, "status", "PENDING"),
            "allowedTransactions": count(transactions, "status", "ALLOWED"),
            "deniedTransactions": count(transactions, "status", "DENIED"),
            "totalAlerts": len(alerts),
            "criticalAlerts": count(alerts, "severity", "CRITICAL"),
            "highAlerts": count(alerts, "severity", "HIGH"),
            "totalContracts": len(contracts),
            "trustedContracts": count(contracts, "trust_level", "TRUSTED"),
            "maliciousContracts": count(contracts, "trust_level", "MALICIOUS"),
            "recentAlerts": alerts[:5],
            "enforceMode": self.enforce_mode(),
        }


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryStore(BaseStore):
    """Process-local store; data resets on restart."""

    backend_name = "memory"

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._records: dict[str, list[Record]] = {}

    def _insert(self, kind: str, body: Record) -> Record:
        with self._lock:
            self._records.setdefault(kind, []).append(body)
            return copy.deepcopy(body)

    def _list(self, kind: str, limit: Optional[int] = None,
              newest_first: bool = True) -> list[Record]:
        with self._lock:
            records = list(self._records.get(kind, []))
        if newest_first:
            records.reverse()
        if limit is not None:
            records = records[:limit]
        return copy.deepcopy(records)

    def _get(self, kind: str, record_id: str) -> Optional[Record]:
        return self._find(kind, "id", record_id)

    def _find(self, kind: str, field: str, value: Any) -> Optional[Record]:
        with self._lock:
            for record in self._records.get(kind, []):
                if record.get(field) == value:
                    return copy.deepcopy(record)
        return None

    def _update(self, kind: str, record_id: str, updates: Record) -> Optional[Record]:
        with self._lock:
            for record in self._records.get(kind, []):
                if record["id"] == record_id:
                    record.update(updates)
                    return copy.deepcopy(record)
        return None

    def _delete(self, kind: str, record_id: str) -> bool:
        with self._lock:
            records = self._records.get(kind, [])
            kept = [r for r in records if r["id"] != record_id]
            self._records[kind] = kept
            return len(kept) != len(records)


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS console_records (
    id          UUID PRIMARY KEY,
    kind        TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    body        JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS console_records_kind_created
    ON console_records (kind, created_at DESC);
"""


class PostgresStore(BaseStore):
    """One JSONB document per record, partitioned by kind."""

    backend_name = "postgres"

    def __init__(self, database_url: str):
        super().__init__()
        self._database_url = database_url

    def _connect(self):
        return psycopg2.connect(self._database_url)

    def init_schema(self) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(SCHEMA_SQL)
            conn.commit()
            cur.close()
        finally:
            conn.close()

    def _insert(self, kind: str, body: Record) -> Record:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO console_records (id, kind, created_at, body) "
                "VALUES (%s, %s, %s, %s)",
                (body["id"], kind, body["createdAt"], Json(body)),
            )
            conn.commit()
            cur.close()
            return body
        finally:
            conn.close()

    def _list(self, kind: str, limit: Optional[int] = None,
              newest_first: bool = True) -> list[Record]:
        order = "DESC" if newest_first else "ASC"
        sql = (
            "SELECT body FROM console_records WHERE kind = %s "
            f"ORDER BY created_at {order}"
        )
        params: tuple = (kind,)
        if limit is not None:
            sql += " LIMIT %s"
            params = (kind, limit)

        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
            cur.close()
            return [row[0] for row in rows]
        finally:
            conn.close()

    def _get(self, kind: str, record_id: str) -> Optional[Record]:
        return self._find(kind, "id", record_id)

    def _find(self, kind: str, field: str, value: Any) -> Optional[Record]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT body FROM console_records "
                "WHERE kind = %s AND body->>%s = %s "
                "ORDER BY created_at DESC LIMIT 1",
                (kind, field, str(value)),
            )
            row = cur.fetchone()
            cur.close()
            return row[0] if row else None
        finally:
            conn.close()

    def _update(self, kind: str, record_id: str, updates: Record) -> Optional[Record]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "UPDATE console_records SET body = body || %s "
                "WHERE kind = %s AND body->>'id' = %s "
                "RETURNING body",
                (Json(updates), kind, record_id),
            )
            row = cur.fetchone()
            conn.commit()
            cur.close()
            return row[0] if row else None
        finally:
            conn.close()

    def _delete(self, kind: str, record_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM console_records WHERE kind = %s AND body->>'id' = %s",
                (kind, record_id),
            )
            deleted = cur.rowcount > 0
            conn.commit()
            cur.close()
            return deleted
        finally:
            conn.close()


def open_store(database_url: str = "") -> BaseStore:
    """PostgreSQL when configured and reachable, in-memory otherwise."""
    store: BaseStore
    if database_url:
        try:
            pg = PostgresStore(database_url)
            pg.init_schema()
            store = pg
            logger.info("Connected to PostgreSQL store")
        except psycopg2.Error as exc:
            logger.warning("PostgreSQL unavailable (%s); switching to in-memory storage", exc)
            store = InMemoryStore()
    else:
        logger.info("DATABASE_URL not set; using in-memory storage")
        store = InMemoryStore()

    store.seed_defaults()
    return store
