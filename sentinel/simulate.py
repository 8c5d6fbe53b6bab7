"""
Chain Simulator

Executes an approval intent against the local chain (live path) or
fabricates the same effect when the chain is unreachable (mock path).
Both paths return the same SimulationResult shape.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from sentinel.chain import (
    ChainError,
    JsonRpcChainBackend,
    decode_uint,
    encode_approve,
    encode_drain,
)
from sentinel.config import CHAIN_MODE, KNOWN_DRAINER, ChainState
from sentinel.intent import Intent

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TxRequest:
    to: str
    data: str
    value: str = "0"


@dataclass(frozen=True)
class TimelineStep:
    block: int
    description: str
    timestamp: int      # epoch ms


@dataclass(frozen=True)
class BalanceState:
    balance: str        # base units
    allowance: str      # base units


@dataclass(frozen=True)
class SimulationResult:
    tx_request: TxRequest
    timeline: tuple[TimelineStep, ...]
    before_state: BalanceState
    after_state: BalanceState
    logs: tuple = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "txRequest": asdict(self.tx_request),
            "timeline": [asdict(step) for step in self.timeline],
            "beforeState": asdict(self.before_state),
            "afterState": asdict(self.after_state),
            "logs": list(self.logs),
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_approve_request(intent: Intent) -> TxRequest:
    return TxRequest(
        to=intent.token.address,
        data=encode_approve(intent.spender, intent.amount),
        value="0",
    )


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------

# Fake block the mock drain lands on (approval block + 18)
MOCK_DRAIN_BLOCK = 19


class SimulationService:
    """
    Chooses between the live JSON-RPC path and the mock path.

    mode="live" always uses the node, mode="mock" never touches the
    network, mode="auto" probes the node before every simulation and falls
    back to mock when the probe fails or times out.
    """

    def __init__(self, chain_state: ChainState | None = None,
                 backend: Optional[JsonRpcChainBackend] = None,
                 mode: str = CHAIN_MODE):
        if mode not in ("auto", "live", "mock"):
            raise ValueError(f"Unknown chain mode: {mode}")
        self.chain_state = chain_state or ChainState()
        self.mode = mode
        if backend is None and mode != "mock":
            backend = JsonRpcChainBackend()
        self.backend = backend

    async def simulate(self, intent: Intent) -> SimulationResult:
        if intent.type != "erc20_approve":
            raise ValueError("Only ERC20 approve transactions are supported")

        if self.mode == "mock":
            return self.simulate_mock(intent)

        if self.mode == "auto" and not await self.backend.is_alive():
            logger.warning("Chain unreachable, using mock simulation")
            return self.simulate_mock(intent)

        try:
            before = await self._read_state(intent)
        except ChainError as exc:
            # Nothing has been sent yet, so degrading is safe
            logger.warning("Chain read failed before execution (%s), using mock simulation", exc)
            return self.simulate_mock(intent)

        return await self._simulate_live(intent, before)

    # -- live ---------------------------------------------------------------

    async def _read_state(self, intent: Intent) -> BalanceState:
        wallet = self.chain_state.user_wallet
        token = intent.token.address
        balance = await self.backend.balance_of(token, wallet)
        allowance = await self.backend.allowance(token, wallet, intent.spender)
        return BalanceState(balance=str(balance), allowance=str(allowance))

    def _should_drain_live(self, intent: Intent) -> bool:
        return (intent.is_unlimited
                and intent.spender.lower() == self.chain_state.malicious_spender.lower())

    async def _simulate_live(self, intent: Intent,
                             before: BalanceState) -> SimulationResult:
        wallet = self.chain_state.user_wallet
        tx_request = build_approve_request(intent)
        logs: list = []

        start_block = await self.backend.block_number()
        timeline = [TimelineStep(start_block, "Initial state", _now_ms())]

        receipt = await self.backend.send_transaction(
            wallet, tx_request.to, tx_request.data, tx_request.value,
        )
        logs.extend(receipt.get("logs", []))
        timeline.append(TimelineStep(
            decode_uint(receipt.get("blockNumber")), "Approval executed", _now_ms(),
        ))

        if self._should_drain_live(intent):
            spender = self.chain_state.malicious_spender
            drain_receipt = await self.backend.send_transaction(
                wallet, spender, encode_drain(intent.token.address, wallet, spender),
            )
            logs.extend(drain_receipt.get("logs", []))
            timeline.append(TimelineStep(
                decode_uint(drain_receipt.get("blockNumber")),
                "Drain executed by malicious spender",
                _now_ms(),
            ))

        after = await self._read_state(intent)
        logger.info("Live simulation complete: balance %s -> %s",
                    before.balance, after.balance)
        return SimulationResult(
            tx_request=tx_request,
            timeline=tuple(timeline),
            before_state=before,
            after_state=after,
            logs=tuple(logs),
        )

    # -- mock ---------------------------------------------------------------

    def _is_risky_mock_spender(self, spender: str) -> bool:
        risky = {self.chain_state.malicious_spender.lower(), KNOWN_DRAINER.lower()}
        return spender.lower() in risky

    def simulate_mock(self, intent: Intent) -> SimulationResult:
        """Fabricate the approval effect from a fixed starting state."""
        before = BalanceState(balance=self.chain_state.initial_balance, allowance="0")
        timeline = [
            TimelineStep(0, "Initial state", _now_ms()),
            TimelineStep(1, "Approval executed", _now_ms()),
        ]

        after_balance = before.balance
        if intent.is_unlimited and self._is_risky_mock_spender(intent.spender):
            after_balance = "0"
            timeline.append(TimelineStep(
                MOCK_DRAIN_BLOCK,
                "Drain detected: spender transferred the full balance",
                _now_ms(),
            ))

        return SimulationResult(
            tx_request=build_approve_request(intent),
            timeline=tuple(timeline),
            before_state=before,
            after_state=BalanceState(balance=after_balance, allowance=intent.amount),
            logs=(),
        )

    async def aclose(self) -> None:
        if self.backend is not None:
            await self.backend.aclose()
