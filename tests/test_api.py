"""
HTTP surface: the paid chat flow, run polling, the event stream and the
enterprise resources.
"""

from __future__ import annotations

import asyncio
import json
import time
from types import SimpleNamespace

import psycopg2
import pytest
from fastapi.testclient import TestClient

from main import app, stream
from sentinel.payment import PaymentReason, PaymentVerification, X402Config

BENIGN = "0x1111111111111111111111111111111111111111"
MALICIOUS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
PAYER = "0x3333333333333333333333333333333333333333"


class FakeGate:
    def __init__(self, reason: PaymentReason | None = None):
        self.config = X402Config(pay_to="0x2222222222222222222222222222222222222222",
                                 price_wei="1000", chain_id=31337)
        self.reason = reason
        self.verified: list[str] = []

    async def verify(self, tx_hash: str) -> PaymentVerification:
        self.verified.append(tx_hash)
        if self.reason is not None:
            return PaymentVerification(ok=False, reason=self.reason)
        return PaymentVerification(ok=True, payer=PAYER, amount_wei="1000")

    async def aclose(self) -> None:
        pass


@pytest.fixture
def client():
    with TestClient(app) as c:
        app.state.gate = FakeGate()
        yield c


def wait_for_result(client, run_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get("/api/chat", params={"runId": run_id}).json()
        if body.get("status") != "PROCESSING":
            return body
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} did not finish")


def sse_events(text):
    return [json.loads(line[len("data: "):])
            for line in text.splitlines() if line.startswith("data: ")]


# ---------------------------------------------------------------------------
# Basics
# ---------------------------------------------------------------------------

def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"


def test_index_lists_endpoints(client):
    assert "chat" in client.get("/").json()["endpoints"]


def test_chain_state(client):
    body = client.get("/api/chain-state").json()
    assert body["contracts"]["mockUSDT"]["symbol"] == "USDT"
    assert body["wallets"]["maliciousSpender"] == MALICIOUS


# ---------------------------------------------------------------------------
# Paid chat flow
# ---------------------------------------------------------------------------

def test_unparseable_message_is_400(client):
    resp = client.post("/api/chat", json={"message": "what's the weather"})
    assert resp.status_code == 400
    assert "Approval" in resp.json()["message"]


def test_missing_spender_is_400(client):
    resp = client.post("/api/chat", json={"message": "approve 10 USDT"},
                       headers={"X-Payment-Tx": "0xpay"})
    assert resp.status_code == 400
    assert app.state.gate.verified == []


def test_missing_payment_is_402_with_preview(client):
    resp = client.post("/api/chat", json={"message": f"Approve 10 USDT to {BENIGN}"})
    assert resp.status_code == 402
    body = resp.json()
    assert body["error"] == "PAYMENT_REQUIRED"
    assert body["protocol"] == "x402"
    assert body["memo"] == "OBS_SIMULATION_RUN"
    assert body["reason"] == "MISSING_PAYMENT"
    assert body["priceWei"] == "1000"
    assert body["chainId"] == 31337
    assert body["runPreview"]["intent"]["amountFormatted"] == "10 USDT"
    assert len(app.state.manager.runs) == 0


def test_amount_beyond_uint256_is_400(client):
    resp = client.post("/api/chat", json={"message": f"approve {'9' * 80} USDT to {BENIGN}"},
                       headers={"X-Payment-Tx": "0xpay"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "BAD_REQUEST"
    assert app.state.gate.verified == []
    assert len(app.state.manager.runs) == 0


def test_failed_verification_is_402_with_reason(client):
    app.state.gate = FakeGate(reason=PaymentReason.INSUFFICIENT_AMOUNT)
    resp = client.post("/api/chat", json={"message": f"Approve 10 USDT to {BENIGN}"},
                       headers={"X-Payment-Tx": "0xcheap"})
    assert resp.status_code == 402
    assert resp.json()["reason"] == "INSUFFICIENT_AMOUNT"


def test_paid_run_completes(client):
    resp = client.post("/api/chat", json={"message": f"Approve 10 USDT to {BENIGN}"},
                       headers={"X-Payment-Tx": "0xpay"})
    assert resp.status_code == 202
    run_id = resp.json()["runId"]

    final = wait_for_result(client, run_id)
    assert final["stage"] == "final"
    assert final["status"] == "ALLOWED"
    assert final["next_step"] == "READY_TO_SIGN"

    payments = app.state.store.list_payments()
    assert payments[0]["txHash"] == "0xpay"
    assert payments[0]["payer"] == PAYER
    assert payments[0]["runId"] == run_id
    assert payments[0]["memo"] == "OBS_SIMULATION_RUN"


def test_paid_malicious_run_is_blocked(client):
    resp = client.post("/api/chat", json={"message": f"Approve unlimited USDT to {MALICIOUS}"},
                       headers={"X-Payment-Tx": "0xpay"})
    final = wait_for_result(client, resp.json()["runId"])
    assert final["status"] == "DENIED"
    assert final["next_step"] == "BLOCKED"
    delta = final["reality_delta"]["delta"]
    assert delta["balance_after"] == delta["balance_before"]


def test_unknown_run_is_404(client):
    assert client.get("/api/chat", params={"runId": "nope"}).status_code == 404
    assert client.get("/api/stream/nope").status_code == 404


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------

def test_stream_of_finished_run_sends_final_snapshot(client):
    resp = client.post("/api/chat", json={"message": f"Approve 10 USDT to {BENIGN}"},
                       headers={"X-Payment-Tx": "0xpay"})
    run_id = resp.json()["runId"]
    wait_for_result(client, run_id)

    stream = client.get(f"/api/stream/{run_id}")
    assert stream.headers["content-type"].startswith("text/event-stream")
    events = sse_events(stream.text)
    assert [e["stage"] for e in events] == ["final"]
    assert events[0]["run_id"] == run_id


def test_stream_of_failed_run_sends_error_snapshot(client):
    manager = app.state.manager
    run_id = manager.start_run("approve 10 USDT")
    manager.runs.emit(run_id, {"stage": "error", "error": "boom"})

    events = sse_events(client.get(f"/api/stream/{run_id}").text)
    assert events == [{"stage": "error", "error": "boom"}]
    assert manager.get_run(run_id).listeners == set()


class StreamRequest:
    def __init__(self, manager):
        self.app = SimpleNamespace(state=SimpleNamespace(manager=manager))

    async def is_disconnected(self) -> bool:
        return False


@pytest.mark.asyncio
async def test_stream_delivers_stages_while_the_run_is_in_flight(manager):
    run_id = manager.start_run(f"Approve 10 USDT to {BENIGN}", "0xpay")
    response = await stream(run_id, StreamRequest(manager))

    async def read_all():
        return "".join([chunk async for chunk in response.body_iterator])

    reader = asyncio.create_task(read_all())
    await asyncio.sleep(0)
    assert manager.get_run(run_id).listeners

    await manager.process_run(run_id)
    text = await asyncio.wait_for(reader, timeout=5)

    assert [e["stage"] for e in sse_events(text)] == [
        "payment_verified", "intent_parse", "fork_chain", "simulate",
        "extract_delta", "judge", "final",
    ]
    assert manager.get_run(run_id).listeners == set()


# ---------------------------------------------------------------------------
# Enterprise resources
# ---------------------------------------------------------------------------

def test_contract_registry(client):
    resp = client.post("/api/contracts", json={"address": BENIGN, "name": "Router"})
    assert resp.status_code == 201
    assert resp.json()["message"] == "Contract added to registry"

    again = client.post("/api/contracts", json={"address": BENIGN, "name": "Router 2"})
    assert again.status_code == 409

    contract = client.get(f"/api/contracts/{BENIGN}").json()
    assert contract["trust_level"] == "UNVERIFIED"
    assert contract["added_by"] == "admin"
    assert client.get("/api/contracts/0xdead").status_code == 404
    assert len(client.get("/api/contracts").json()) == 1


def test_policy_crud_and_global_mode(client):
    policies = client.get("/api/policies").json()
    assert len(policies) == 2

    created = client.post("/api/policies", json={"name": "Watch", "mode": "ENFORCE"})
    assert created.status_code == 201
    policy_id = created.json()["id"]

    assert client.patch(f"/api/policies/{policy_id}",
                        json={"enabled": False, "mode": "MONITOR"}).status_code == 200
    assert client.patch(f"/api/policies/{policy_id}",
                        json={"enabled": True, "mode": "LOUD"}).status_code == 422
    assert client.patch("/api/policies/missing",
                        json={"enabled": True}).status_code == 404

    resp = client.post("/api/policies/global-mode", json={"mode": "MONITOR"})
    assert resp.json()["modifiedCount"] == 3
    assert resp.json()["enforceMode"] is False
    assert client.get("/api/dashboard").json()["enforceMode"] is False

    assert client.delete(f"/api/policies/{policy_id}").status_code == 200
    assert client.delete(f"/api/policies/{policy_id}").status_code == 404


def test_monitor_mode_over_http(client):
    client.post("/api/policies/global-mode", json={"mode": "MONITOR"})
    resp = client.post("/api/chat", json={"message": f"Approve unlimited USDT to {MALICIOUS}"},
                       headers={"X-Payment-Tx": "0xpay"})
    final = wait_for_result(client, resp.json()["runId"])
    assert final["status"] == "ALLOWED"
    assert final["enforce_mode"] is False
    alerts = client.get("/api/alerts").json()
    assert alerts[0]["event_type"] == "POLICY_VIOLATION_MONITORED"


def test_transaction_queue(client):
    resp = client.post("/api/chat", json={"message": f"Approve 600 USDT to {BENIGN}"},
                       headers={"X-Payment-Tx": "0xpay"})
    run_id = resp.json()["runId"]
    assert wait_for_result(client, run_id)["status"] == "PENDING"

    tx = client.get(f"/api/transactions/{run_id}").json()
    assert tx["status"] == "PENDING"
    assert client.get("/api/transactions").json()[0]["intent_id"] == run_id

    assert client.patch(f"/api/transactions/{run_id}",
                        json={"status": "SIGNED"}).status_code == 422
    updated = client.patch(f"/api/transactions/{run_id}", json={"status": "ALLOWED"})
    assert updated.json()["status"] == "ALLOWED"
    assert client.get("/api/audit").json()[0]["action"] == "TRANSACTION_ALLOWED"

    hashed = client.post("/api/transactions/update-hash",
                         json={"intent_id": run_id, "tx_hash": "0xabc", "block_number": 7})
    assert hashed.json() == {"success": True, "tx_hash": "0xabc"}
    tx = client.get(f"/api/transactions/{run_id}").json()
    assert tx["on_chain"] is True
    assert tx["block_number"] == 7
    assert client.get("/api/audit").json()[0]["action"] == "TRANSACTION_EXECUTED_ON_CHAIN"

    assert client.get("/api/transactions/missing").status_code == 404
    assert client.post("/api/transactions/update-hash",
                       json={"intent_id": "missing", "tx_hash": "0x1"}).status_code == 404


def test_simulation_reports_and_alerts(client):
    resp = client.post("/api/simulations", json={
        "report_id": "r1", "transaction_id": "t1", "decision": "DENIED",
    })
    assert resp.status_code == 201
    assert client.get("/api/simulations").json()[0]["report_id"] == "r1"

    alerts = client.get("/api/alerts").json()
    assert alerts[0]["event_type"] == "TRANSACTION_DENIED"
    assert alerts[0]["acknowledged"] is False

    acked = client.patch(f"/api/alerts/{alerts[0]['id']}", json={"acknowledged": True})
    assert acked.json()["acknowledged"] is True
    assert client.patch("/api/alerts/missing", json={"acknowledged": True}).status_code == 404


def test_allowances_and_dashboard(client):
    resp = client.post("/api/chat", json={"message": f"Approve 10 USDT to {BENIGN}"},
                       headers={"X-Payment-Tx": "0xpay"})
    wait_for_result(client, resp.json()["runId"])

    allowances = client.get("/api/allowances").json()
    assert allowances[0]["spender"] == BENIGN
    assert allowances[0]["risk_score"] == 0

    stats = client.get("/api/dashboard").json()
    assert stats["totalTransactions"] == 1
    assert stats["allowedTransactions"] == 1
    assert stats["enforceMode"] is True


def test_store_outage_is_503(client, monkeypatch):
    def broken(*args, **kwargs):
        raise psycopg2.OperationalError("server closed the connection")

    monkeypatch.setattr(app.state.store, "list_contracts", broken)
    resp = client.get("/api/contracts")
    assert resp.status_code == 503
    assert resp.json() == {"error": "Database not ready"}
