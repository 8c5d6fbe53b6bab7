"""
Run Orchestrator

Sequences one run through the pipeline and streams each stage:

    payment_verified (paid runs) -> intent_parse -> fork_chain -> simulate
        -> extract_delta -> judge -> final

A terminal ``error`` event may replace any later stage. Between ``judge``
and ``final`` the outcome is reconciled against the global policy mode:
in monitor mode a DENIED/PENDING outcome is let through and recorded as an
alert instead of a queued transaction. A BLOCKED outcome never presents a
spent balance.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from sentinel.analyze import RealityDelta, extract_delta
from sentinel.config import ChainState, JudgmentThresholds
from sentinel.intent import Intent, parse_intent
from sentinel.judge import Judgment, Verdict, judge
from sentinel.policy import Severity
from sentinel.runs import Listener, Run, RunRegistry, StageEvent
from sentinel.simulate import SimulationResult, SimulationService
from sentinel.store import BaseStore

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    ALLOWED = "ALLOWED"
    PENDING = "PENDING"
    DENIED = "DENIED"


class NextStep(str, Enum):
    READY_TO_SIGN = "READY_TO_SIGN"
    NEED_JUSTIFICATION = "NEED_JUSTIFICATION"
    BLOCKED = "BLOCKED"


NEXT_STEP_FOR_STATUS = {
    RunStatus.ALLOWED: NextStep.READY_TO_SIGN,
    RunStatus.PENDING: NextStep.NEED_JUSTIFICATION,
    RunStatus.DENIED: NextStep.BLOCKED,
}

MONITOR_WARNING = (
    "Monitor mode: this approval would have been {status} under enforcement. "
    "It was allowed and recorded as an alert."
)


@dataclass
class Outcome:
    status: RunStatus
    next_step: NextStep
    enforce_mode: bool
    monitor_override: bool = False


def initial_status(judgment: Judgment) -> RunStatus:
    if judgment.judgment == Verdict.ALLOW:
        return RunStatus.ALLOWED
    if judgment.override_allowed:
        return RunStatus.PENDING
    return RunStatus.DENIED


def reconcile(judgment: Judgment, enforcing: bool) -> Outcome:
    """Apply the global policy mode to a fresh judgment.

    Mutates *judgment* (once) when monitor mode overrides the outcome.
    """
    status = initial_status(judgment)
    if not enforcing and status in (RunStatus.DENIED, RunStatus.PENDING):
        judgment.apply_monitor_override(MONITOR_WARNING.format(status=status.value))
        return Outcome(RunStatus.ALLOWED, NextStep.READY_TO_SIGN,
                       enforce_mode=False, monitor_override=True)
    return Outcome(status, NEXT_STEP_FOR_STATUS[status], enforce_mode=enforcing)


def run_severity(judgment: Judgment, status: RunStatus) -> Severity:
    if status == RunStatus.DENIED or not judgment.override_allowed:
        return Severity.CRITICAL
    if judgment.judgment == Verdict.DENY or judgment.monitor_mode_override:
        return Severity.HIGH
    return Severity.LOW


class RunManager:
    """
    Owns the run registry and drives each run's pipeline on the event loop.
    Stages are strictly sequential within a run; runs proceed concurrently.
    """

    def __init__(self, store: BaseStore,
                 simulator: SimulationService | None = None,
                 chain_state: ChainState | None = None,
                 thresholds: JudgmentThresholds | None = None,
                 runs: RunRegistry | None = None,
                 network: str = "localhost"):
        self.chain_state = chain_state or ChainState()
        self.store = store
        self.simulator = simulator or SimulationService(self.chain_state)
        self.thresholds = thresholds or JudgmentThresholds.from_env()
        self.runs = runs or RunRegistry()
        self.network = network
        self._tasks: set[asyncio.Task] = set()

    # -- entry points -----------------------------------------------------------

    def parse_intent_preview(self, message: str) -> Intent:
        """Free parse step; raises IntentError for unusable messages."""
        return parse_intent(message, self.chain_state)

    def start_run(self, message: str, payment_tx_hash: Optional[str] = None) -> str:
        run = self.runs.create(message, payment_tx_hash)
        logger.info("Run %s accepted", run.id)
        return run.id

    def launch(self, run_id: str) -> asyncio.Task:
        """Schedule process_run on the running loop and keep a reference."""
        task = asyncio.get_running_loop().create_task(self.process_run(run_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def get_run(self, run_id: str) -> Optional[Run]:
        return self.runs.get(run_id)

    def on(self, run_id: str, listener: Listener) -> Optional[Run]:
        return self.runs.subscribe(run_id, listener)

    def off(self, run_id: str, listener: Listener) -> None:
        self.runs.unsubscribe(run_id, listener)

    def _emit(self, run_id: str, event: StageEvent) -> None:
        logger.info("Run %s stage %s", run_id, event.get("stage"))
        self.runs.emit(run_id, event)

    # -- pipeline ---------------------------------------------------------------

    async def process_run(self, run_id: str) -> None:
        run = self.runs.get(run_id)
        if run is None:
            return

        try:
            if run.payment_tx_hash:
                self._emit(run_id, {
                    "stage": "payment_verified",
                    "message": "Payment confirmed!",
                    "txHash": run.payment_tx_hash,
                })

            self._emit(run_id, {"stage": "intent_parse", "message": "Parsing intent..."})
            intent = parse_intent(run.message, self.chain_state)

            self._emit(run_id, {"stage": "fork_chain", "message": "Forking chain..."})
            sim = await self.simulator.simulate(intent)

            self._emit(run_id, {"stage": "simulate", "message": "Simulating..."})

            self._emit(run_id, {"stage": "extract_delta",
                                "message": "Extracting reality delta..."})
            delta = extract_delta(sim, intent, self.chain_state, self.thresholds)

            self._emit(run_id, {"stage": "judge", "message": "Judging..."})
            judgment = judge(intent, delta, sim, self.chain_state, self.thresholds)

            enforcing = await self._read_enforce_mode()
            judged_status = initial_status(judgment)
            outcome = reconcile(judgment, enforcing)
            if outcome.monitor_override:
                logger.warning("Run %s: monitor mode overrode %s outcome",
                               run_id, judged_status.value)
            if outcome.next_step == NextStep.BLOCKED:
                delta = delta.with_balance_unchanged()

            final = self._final_event(run, intent, sim, delta, judgment, outcome)
            await self._persist(run, intent, sim, delta, judgment, outcome)

            run.result = final
            self._emit(run_id, final)

        except Exception as exc:
            logger.exception("Run %s failed", run_id)
            error_event = {"stage": "error", "error": str(exc) or type(exc).__name__}
            run.result = error_event
            self._emit(run_id, error_event)

    async def _read_enforce_mode(self) -> bool:
        try:
            return await asyncio.to_thread(self.store.enforce_mode)
        except Exception:
            # Fail closed: an unreadable policy mode is treated as enforcing
            logger.exception("Could not read policy mode; assuming enforce mode")
            return True

    def _final_event(self, run: Run, intent: Intent, sim: SimulationResult,
                     delta: RealityDelta, judgment: Judgment,
                     outcome: Outcome) -> StageEvent:
        return {
            "stage": "final",
            "run_id": run.id,
            "intent_json": intent.to_dict(),
            "tx_request": sim.to_dict()["txRequest"],
            "timeline": sim.to_dict()["timeline"],
            "reality_delta": delta.to_dict(),
            "judgment": judgment.to_dict(),
            "status": outcome.status.value,
            "next_step": outcome.next_step.value,
            "enforce_mode": outcome.enforce_mode,
        }

    # -- persistence (best effort) --------------------------------------------

    async def _guarded(self, label: str, fn, *args) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception:
            logger.exception("Failed to write %s", label)
            return None

    async def _persist(self, run: Run, intent: Intent, sim: SimulationResult,
                       delta: RealityDelta, judgment: Judgment,
                       outcome: Outcome) -> None:
        status = outcome.status.value
        severity = run_severity(judgment, outcome.status).value
        reason = judgment.reasoning_bullets[0] if judgment.reasoning_bullets else ""

        await self._guarded("audit log", self.store.add_audit_log, {
            "actor": "system",
            "action": "RUN_JUDGED",
            "decision": status,
            "reason": reason,
            "tx_hash": run.payment_tx_hash,
            "run_id": run.id,
        })

        await self._guarded("simulation report", self.store.add_simulation, {
            "report_id": run.id,
            "transaction_id": run.id,
            "decision": "ALLOWED" if outcome.status == RunStatus.ALLOWED else "DENIED",
            "balance_before": delta.delta.balance_before,
            "balance_after": delta.delta.balance_after,
            "allowance_before": delta.delta.allowance_before,
            "allowance_after": delta.delta.allowance_after,
            "delta_summary": ", ".join(delta.to_dict()["risk_flags"]) or "NO_RISK_FLAGS",
        })

        if outcome.monitor_override:
            await self._guarded("alert", self.store.add_alert, {
                "event_type": "POLICY_VIOLATION_MONITORED",
                "severity": severity,
                "message": (f"Monitor mode allowed approval of {intent.amount_formatted} "
                            f"to {intent.spender}: {reason}"),
                "transaction_id": run.id,
            })
        else:
            await self._guarded("transaction", self.store.add_transaction, {
                "intent_id": run.id,
                "from_address": delta.wallet,
                "to_address": sim.tx_request.to,
                "function_name": "approve",
                "data": sim.tx_request.data,
                "value": sim.tx_request.value,
                "intent": run.message,
                "status": status,
                "severity": severity,
                "network": self.network,
                "paymentTxHash": run.payment_tx_hash,
            })
            if outcome.status == RunStatus.DENIED:
                await self._guarded("alert", self.store.add_alert, {
                    "event_type": "TRANSACTION_DENIED",
                    "severity": severity,
                    "message": f"Transaction {run.id} was denied by policy",
                    "transaction_id": run.id,
                })

        if outcome.next_step != NextStep.BLOCKED:
            await self._guarded("allowance", self.store.add_allowance, {
                "token_address": intent.token.address,
                "owner": delta.wallet,
                "spender": intent.spender,
                "amount": intent.amount,
                "risk_score": len(delta.risk_flags) * 25,
            })

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.simulator.aclose()
