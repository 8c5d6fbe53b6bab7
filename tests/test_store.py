"""
In-memory store: record operations, the materialized enforce mode and
the dashboard aggregate.
"""

from __future__ import annotations

import threading

import pytest

from sentinel.store import DuplicateRecordError, InMemoryStore, open_store


def test_open_store_without_url_is_in_memory_and_seeded():
    store = open_store("")
    assert isinstance(store, InMemoryStore)
    assert len(store.list_policies()) == 2
    assert store.enforce_mode() is True


def test_seed_is_idempotent(store):
    store.seed_defaults()
    assert len(store.list_policies()) == 2


def test_records_get_id_and_timestamp(store):
    record = store.add_audit_log({"actor": "system", "action": "RUN_JUDGED"})
    assert record["id"]
    assert record["createdAt"]


def test_lists_are_newest_first(store):
    for n in range(3):
        store.add_alert({"message": f"alert {n}"})
    assert [a["message"] for a in store.list_alerts()] == ["alert 2", "alert 1", "alert 0"]
    assert len(store.list_alerts(limit=2)) == 2


def test_returned_records_are_copies(store):
    store.add_alert({"message": "original"})
    store.list_alerts()[0]["message"] = "mutated"
    assert store.list_alerts()[0]["message"] == "original"


def test_contract_lookup_is_case_insensitive(store):
    store.add_contract({"address": "0xAbC0000000000000000000000000000000000001", "name": "Router"})
    found = store.get_contract_by_address("0xabc0000000000000000000000000000000000001")
    assert found["name"] == "Router"


def test_duplicate_contract_rejected(store):
    store.add_contract({"address": "0xabc", "name": "A"})
    with pytest.raises(DuplicateRecordError):
        store.add_contract({"address": "0xABC", "name": "B"})


def test_transaction_defaults_and_lookup_by_intent_id(store):
    tx = store.add_transaction({"intent_id": "run-1", "from_address": "0x1", "to_address": "0x2"})
    assert tx["status"] == "PENDING"
    assert tx["severity"] == "LOW"
    assert tx["on_chain"] is False
    assert store.get_transaction("run-1")["id"] == tx["id"]
    assert store.get_transaction(tx["id"])["intent_id"] == "run-1"


def test_update_transaction_by_intent_id(store):
    store.add_transaction({"intent_id": "run-2", "from_address": "0x1", "to_address": "0x2"})
    updated = store.update_transaction("run-2", {"status": "ALLOWED"})
    assert updated["status"] == "ALLOWED"
    assert store.update_transaction("missing", {"status": "ALLOWED"}) is None


def test_policy_mutations_refresh_enforce_mode(store):
    assert store.enforce_mode() is True
    added = store.add_policy({"name": "watch", "enabled": True, "mode": "MONITOR"})
    assert store.enforce_mode() is False

    store.update_policy(added["id"], enabled=False, mode="MONITOR")
    assert store.enforce_mode() is True

    store.update_policy(added["id"], enabled=True, mode="MONITOR")
    assert store.delete_policy(added["id"]) is True
    assert store.enforce_mode() is True
    assert store.delete_policy(added["id"]) is False


def test_set_all_policy_modes(store):
    assert store.set_all_policy_modes("MONITOR") == 2
    assert store.enforce_mode() is False
    assert {p["mode"] for p in store.list_policies()} == {"MONITOR"}
    store.set_all_policy_modes("ENFORCE")
    assert store.enforce_mode() is True


def test_enforce_mode_readers_wait_for_bulk_mode_change(store, monkeypatch):
    original_update = store._update
    readers = []

    def update_then_read(kind, record_id, updates):
        record = original_update(kind, record_id, updates)
        seen = []
        reader = threading.Thread(target=lambda: seen.append(store.enforce_mode()))
        reader.start()
        reader.join(timeout=0.05)
        readers.append((reader, reader.is_alive(), seen))
        return record

    monkeypatch.setattr(store, "_update", update_then_read)
    assert store.set_all_policy_modes("MONITOR") == 2
    assert len(readers) == 2

    for reader, blocked, seen in readers:
        reader.join(timeout=5)
        # No reader saw a half-applied policy set
        assert blocked is True
        assert seen == [False]


def test_dashboard_stats(store):
    store.add_transaction({"intent_id": "a", "status": "DENIED"})
    store.add_transaction({"intent_id": "b", "status": "ALLOWED"})
    store.add_transaction({"intent_id": "c"})
    for n in range(6):
        store.add_alert({"message": str(n), "severity": "CRITICAL" if n % 2 else "HIGH"})
    store.add_contract({"address": "0x1", "name": "x", "trust_level": "MALICIOUS"})

    stats = store.dashboard_stats()
    assert stats["totalTransactions"] == 3
    assert stats["pendingTransactions"] == 1
    assert stats["allowedTransactions"] == 1
    assert stats["deniedTransactions"] == 1
    assert stats["totalAlerts"] == 6
    assert stats["criticalAlerts"] == 3
    assert stats["highAlerts"] == 3
    assert stats["maliciousContracts"] == 1
    assert [a["message"] for a in stats["recentAlerts"]] == ["5", "4", "3", "2", "1"]
    assert stats["enforceMode"] is True
