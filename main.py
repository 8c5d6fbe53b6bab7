"""
Sentinel Console Gateway

Single point of entry for approval intents. A chat message is parsed for
free; the paid pipeline (simulation, delta extraction, judgment) starts
only after an x402 payment is verified, runs in the background and
streams its stages to subscribers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import psycopg2
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from sentinel.config import (
    CHAIN_MODE,
    DATABASE_URL,
    LOG_FORMAT,
    LOG_LEVEL,
    STREAM_KEEPALIVE_SECONDS,
    load_chain_state,
)
from sentinel.enterprise import router as enterprise_router
from sentinel.intent import Intent, IntentError
from sentinel.logging_config import configure_logging
from sentinel.orchestrator import RunManager
from sentinel.payment import PAYMENT_MEMO, PaymentGate, PaymentReason, X402Config
from sentinel.runs import TERMINAL_STAGES
from sentinel.simulate import SimulationService
from sentinel.store import open_store

logger = logging.getLogger("sentinel.gateway")

chain_state = load_chain_state()


# ---------------------------------------------------------------------------
# App + shared services
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(LOG_LEVEL, LOG_FORMAT)
    store = open_store(DATABASE_URL)
    app.state.store = store
    app.state.gate = PaymentGate(X402Config.from_env())
    app.state.manager = RunManager(
        store=store,
        simulator=SimulationService(chain_state, mode=CHAIN_MODE),
        chain_state=chain_state,
    )
    logger.info("Console ready (store=%s, chain mode=%s)", store.backend_name, CHAIN_MODE)
    yield
    await app.state.manager.aclose()
    await app.state.gate.aclose()


app = FastAPI(
    title="Sentinel Approval Console",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(enterprise_router)


@app.exception_handler(psycopg2.Error)
async def database_unavailable(request: Request, exc: psycopg2.Error):
    logger.error("Store error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "Database not ready"})


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "sentinel-console",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/")
def index():
    return {
        "message": "Sentinel Approval Console",
        "endpoints": {
            "health": "/health",
            "chain-state": "/api/chain-state",
            "chat": "/api/chat",
            "stream": "/api/stream/{runId}",
            "contracts": "/api/contracts",
            "policies": "/api/policies",
            "transactions": "/api/transactions",
            "dashboard": "/api/dashboard",
        },
    }


@app.get("/api/chain-state")
def get_chain_state():
    return chain_state.to_dict()


def _payment_required(config: X402Config, reason: str, intent: Intent) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "error": "PAYMENT_REQUIRED",
            "protocol": "x402",
            "priceWei": config.price_wei,
            "chainId": config.chain_id,
            "payTo": config.pay_to,
            "memo": PAYMENT_MEMO,
            "reason": reason,
            "runPreview": {"intent": intent.to_dict()},
        },
    )


@app.post("/api/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    x_payment_tx: Optional[str] = Header(default=None),
):
    """
    Submit a chat message for a paid simulation run.

    Flow:
      1. Parse the intent (free). Unusable messages get a 400.
      2. Without a verified payment, answer 402 with the price and preview.
      3. Record the payment, start the run in the background, return runId.
    """
    manager: RunManager = request.app.state.manager
    gate: PaymentGate = request.app.state.gate

    # --- Step 1: Free intent preview ---
    try:
        preview = manager.parse_intent_preview(body.message)
    except IntentError as exc:
        return JSONResponse(
            status_code=400,
            content={"error": "BAD_REQUEST", "message": str(exc)},
        )

    # --- Step 2: Payment gate ---
    if not x_payment_tx:
        return _payment_required(gate.config, PaymentReason.MISSING_PAYMENT.value, preview)

    verification = await gate.verify(x_payment_tx)
    if not verification.ok:
        reason = verification.reason.value if verification.reason else "INVALID_PAYMENT"
        return _payment_required(gate.config, reason, preview)

    # --- Step 3: Start the paid run ---
    run_id = manager.start_run(body.message, x_payment_tx)
    try:
        await asyncio.to_thread(request.app.state.store.add_payment, {
            "txHash": x_payment_tx,
            "payer": verification.payer,
            "amountWei": verification.amount_wei,
            "memo": PAYMENT_MEMO,
            "runId": run_id,
        })
    except Exception:
        logger.exception("Failed to record payment %s", x_payment_tx)

    manager.launch(run_id)
    return JSONResponse(status_code=202, content={"runId": run_id})


@app.get("/api/chat")
def chat_status(runId: str, request: Request):
    run = request.app.state.manager.get_run(runId)
    if run is None:
        return JSONResponse(status_code=404, content={"error": "Run not found"})
    if run.result is not None:
        return run.result
    return {"status": "PROCESSING", "currentStage": run.current_stage}


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


@app.get("/api/stream/{run_id}")
async def stream(run_id: str, request: Request):
    """
    Server-sent events for one run: the current stage first, then every
    later stage as it happens, with keep-alive comments in between. The
    stream ends after ``final`` or ``error``.
    """
    manager: RunManager = request.app.state.manager
    if manager.get_run(run_id) is None:
        return JSONResponse(status_code=404, content={"error": "Run not found"})

    queue: asyncio.Queue = asyncio.Queue()
    listener = queue.put_nowait

    # Subscribe and snapshot without yielding in between
    run = manager.on(run_id, listener)
    snapshot = run.current_stage if run is not None else None

    async def events():
        try:
            if snapshot is not None:
                yield _sse(snapshot)
                if snapshot.get("stage") in TERMINAL_STAGES:
                    return
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        return
                    yield ": keepalive\n\n"
                    continue
                yield _sse(event)
                if event.get("stage") in TERMINAL_STAGES:
                    return
        finally:
            manager.off(run_id, listener)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
