"""
Enterprise console routes: contract registry, policies, the transaction
queue, simulation reports, alerts, audit trail, allowances and the
dashboard summary.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from sentinel.policy import PolicyMode, Severity
from sentinel.store import BaseStore, DuplicateRecordError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["enterprise"])

ModeName = Literal["ENFORCE", "MONITOR"]
TxStatus = Literal["ALLOWED", "DENIED", "PENDING"]


def get_store(request: Request) -> BaseStore:
    return request.app.state.store


def _not_found(what: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"{what} not found"})


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ContractBody(BaseModel):
    address: str
    name: str
    type: str = "UNKNOWN"
    trust_level: str = "UNVERIFIED"
    risk_tag: str = "UNVERIFIED"
    reason: Optional[str] = None
    source_link: Optional[str] = None


class PolicyBody(BaseModel):
    name: str
    description: str = ""
    enabled: bool = True
    mode: ModeName = "MONITOR"
    rule_type: str = ""
    severity: Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"] = "LOW"


class PolicyUpdateBody(BaseModel):
    enabled: bool
    mode: ModeName = "ENFORCE"


class GlobalModeBody(BaseModel):
    mode: ModeName


class TransactionStatusBody(BaseModel):
    status: TxStatus


class TransactionHashBody(BaseModel):
    intent_id: str
    tx_hash: str
    block_number: Optional[int] = None


class SimulationBody(BaseModel):
    report_id: str
    transaction_id: str
    decision: str
    balance_before: Optional[str] = None
    balance_after: Optional[str] = None
    allowance_before: Optional[str] = None
    allowance_after: Optional[str] = None
    delta_summary: Optional[str] = None


class AlertUpdateBody(BaseModel):
    acknowledged: bool


# ---------------------------------------------------------------------------
# Contract registry
# ---------------------------------------------------------------------------

@router.get("/contracts")
def list_contracts(store: BaseStore = Depends(get_store)):
    return store.list_contracts()


@router.get("/contracts/{address}")
def get_contract(address: str, store: BaseStore = Depends(get_store)):
    contract = store.get_contract_by_address(address)
    if contract is None:
        return _not_found("Contract")
    return contract


@router.post("/contracts", status_code=201)
def add_contract(body: ContractBody, store: BaseStore = Depends(get_store)):
    try:
        record = store.add_contract({**body.model_dump(), "added_by": "admin"})
    except DuplicateRecordError:
        return JSONResponse(status_code=409, content={"error": "Contract already exists"})
    logger.info("Contract %s added to registry", body.address)
    return {
        "id": record["id"],
        "address": body.address,
        "name": body.name,
        "message": "Contract added to registry",
    }


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

@router.get("/policies")
def list_policies(store: BaseStore = Depends(get_store)):
    return store.list_policies()


@router.post("/policies", status_code=201)
def add_policy(body: PolicyBody, store: BaseStore = Depends(get_store)):
    return store.add_policy(body.model_dump())


@router.post("/policies/global-mode")
def set_global_mode(body: GlobalModeBody, store: BaseStore = Depends(get_store)):
    store.seed_defaults()
    count = store.set_all_policy_modes(body.mode)
    logger.info("Global update: %d policies set to %s", count, body.mode)
    return {
        "message": f"All policies updated to {body.mode} mode",
        "modifiedCount": count,
        "enforceMode": store.enforce_mode(),
    }


@router.patch("/policies/{policy_id}")
def update_policy(policy_id: str, body: PolicyUpdateBody,
                  store: BaseStore = Depends(get_store)):
    updated = store.update_policy(policy_id, body.enabled, PolicyMode(body.mode).value)
    if updated is None:
        return _not_found("Policy")
    return {"message": "Policy updated", "id": policy_id}


@router.delete("/policies/{policy_id}")
def delete_policy(policy_id: str, store: BaseStore = Depends(get_store)):
    if not store.delete_policy(policy_id):
        return _not_found("Policy")
    return {"message": "Policy deleted"}


# ---------------------------------------------------------------------------
# Transaction queue
# ---------------------------------------------------------------------------

@router.get("/transactions")
def list_transactions(limit: int = Query(50, ge=1, le=500),
                      store: BaseStore = Depends(get_store)):
    return store.list_transactions(limit)


@router.post("/transactions/update-hash")
def update_transaction_hash(body: TransactionHashBody,
                            store: BaseStore = Depends(get_store)):
    """Mark a queued transaction as executed on chain."""
    updated = store.update_transaction(body.intent_id, {
        "tx_hash": body.tx_hash,
        "block_number": body.block_number,
        "on_chain": True,
        "executed_at": datetime.now(timezone.utc).isoformat(),
    })
    if updated is None:
        return _not_found("Transaction")
    store.add_audit_log({
        "actor": "user",
        "action": "TRANSACTION_EXECUTED_ON_CHAIN",
        "tx_hash": body.tx_hash,
        "decision": "EXECUTED",
    })
    return {"success": True, "tx_hash": body.tx_hash}


@router.get("/transactions/{tx_id}")
def get_transaction(tx_id: str, store: BaseStore = Depends(get_store)):
    tx = store.get_transaction(tx_id)
    if tx is None:
        return _not_found("Transaction")
    return tx


@router.patch("/transactions/{tx_id}")
def update_transaction_status(tx_id: str, body: TransactionStatusBody,
                              store: BaseStore = Depends(get_store)):
    updated = store.update_transaction(tx_id, {"status": body.status})
    if updated is None:
        return _not_found("Transaction")
    store.add_audit_log({
        "actor": "admin",
        "action": f"TRANSACTION_{body.status}",
        "tx_hash": updated.get("intent_id"),
        "decision": body.status,
    })
    return updated


# ---------------------------------------------------------------------------
# Simulation reports, alerts, audit, allowances
# ---------------------------------------------------------------------------

@router.get("/simulations")
def list_simulations(limit: int = Query(50, ge=1, le=500),
                     store: BaseStore = Depends(get_store)):
    return store.list_simulations(limit)


@router.post("/simulations", status_code=201)
def add_simulation(body: SimulationBody, store: BaseStore = Depends(get_store)):
    store.add_simulation(body.model_dump())
    if body.decision == "DENIED":
        store.add_alert({
            "severity": Severity.HIGH.value,
            "event_type": "TRANSACTION_DENIED",
            "message": f"Transaction {body.transaction_id} was denied by policy",
            "transaction_id": body.transaction_id,
        })
    return {
        "report_id": body.report_id,
        "decision": body.decision,
        "message": "Simulation report created",
    }


@router.get("/alerts")
def list_alerts(limit: int = Query(100, ge=1, le=1000),
                store: BaseStore = Depends(get_store)):
    return store.list_alerts(limit)


@router.patch("/alerts/{alert_id}")
def acknowledge_alert(alert_id: str, body: AlertUpdateBody,
                      store: BaseStore = Depends(get_store)):
    updated = store.update_alert(alert_id, {"acknowledged": body.acknowledged})
    if updated is None:
        return _not_found("Alert")
    return updated


@router.get("/audit")
def list_audit_logs(limit: int = Query(200, ge=1, le=1000),
                    store: BaseStore = Depends(get_store)):
    return store.list_audit_logs(limit)


@router.get("/allowances")
def list_allowances(store: BaseStore = Depends(get_store)):
    return store.list_allowances()


@router.get("/dashboard")
def dashboard(store: BaseStore = Depends(get_store)) -> dict[str, Any]:
    return store.dashboard_stats()
