"""
Delta Analyzer

Compares the before/after simulation state against the parsed intent and
produces the normalized reality delta with its risk flags.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from decimal import Decimal, localcontext
from enum import Enum
from typing import Optional

from sentinel.config import MAX_UINT256, ChainState, JudgmentThresholds
from sentinel.intent import Intent, TokenRef
from sentinel.simulate import SimulationResult


class RiskFlag(str, Enum):
    UNLIMITED_APPROVAL = "UNLIMITED_APPROVAL"
    BALANCE_DRAINED = "BALANCE_DRAINED"
    MALICIOUS_SPENDER = "MALICIOUS_SPENDER"
    LARGE_APPROVAL = "LARGE_APPROVAL"


# Flag order used when serializing
FLAG_ORDER = (
    RiskFlag.UNLIMITED_APPROVAL,
    RiskFlag.BALANCE_DRAINED,
    RiskFlag.MALICIOUS_SPENDER,
    RiskFlag.LARGE_APPROVAL,
)


@dataclass(frozen=True)
class DeltaValues:
    balance_before: str     # display units, 6 dp
    balance_after: str      # display units, 6 dp
    allowance_before: str   # raw base units
    allowance_after: str    # raw base units


@dataclass(frozen=True)
class RealityDelta:
    wallet: str
    token: TokenRef
    delta: DeltaValues
    risk_flags: frozenset[RiskFlag]
    irreversible: bool

    def has(self, flag: RiskFlag) -> bool:
        return flag in self.risk_flags

    def with_balance_unchanged(self) -> "RealityDelta":
        """Copy whose post-balance equals the pre-balance."""
        return replace(self, delta=replace(self.delta,
                                           balance_after=self.delta.balance_before))

    def to_dict(self) -> dict:
        return {
            "wallet": self.wallet,
            "token": asdict(self.token),
            "delta": asdict(self.delta),
            "risk_flags": [f.value for f in FLAG_ORDER if f in self.risk_flags],
            "irreversible": self.irreversible,
        }


def to_display_units(raw: str, decimals: int) -> str:
    with localcontext() as ctx:
        ctx.prec = 120
        return f"{Decimal(raw).scaleb(-decimals):.6f}"


def determine_risk_flags(sim: SimulationResult, intent: Optional[Intent],
                         chain_state: ChainState,
                         thresholds: JudgmentThresholds) -> frozenset[RiskFlag]:
    """Each flag is an independent predicate over the simulation and intent."""
    flags: set[RiskFlag] = set()
    before_balance = Decimal(sim.before_state.balance)
    after_balance = Decimal(sim.after_state.balance)

    if sim.after_state.allowance == MAX_UINT256:
        flags.add(RiskFlag.UNLIMITED_APPROVAL)

    if after_balance < before_balance:
        flags.add(RiskFlag.BALANCE_DRAINED)

    if intent is not None:
        if intent.spender.lower() == chain_state.malicious_spender.lower():
            flags.add(RiskFlag.MALICIOUS_SPENDER)

        if (not intent.is_unlimited
                and Decimal(intent.amount) > before_balance * thresholds.large_approval_ratio):
            flags.add(RiskFlag.LARGE_APPROVAL)

    return frozenset(flags)


def extract_delta(sim: SimulationResult, intent: Optional[Intent] = None,
                  chain_state: ChainState | None = None,
                  thresholds: JudgmentThresholds | None = None) -> RealityDelta:
    chain_state = chain_state or ChainState()
    thresholds = thresholds or JudgmentThresholds()
    decimals = chain_state.token_decimals

    flags = determine_risk_flags(sim, intent, chain_state, thresholds)
    token = intent.token if intent is not None else TokenRef(
        symbol=chain_state.token_symbol, address=chain_state.token_address,
    )

    return RealityDelta(
        wallet=chain_state.user_wallet,
        token=token,
        delta=DeltaValues(
            balance_before=to_display_units(sim.before_state.balance, decimals),
            balance_after=to_display_units(sim.after_state.balance, decimals),
            allowance_before=sim.before_state.allowance,
            allowance_after=sim.after_state.allowance,
        ),
        risk_flags=flags,
        irreversible=(RiskFlag.BALANCE_DRAINED in flags
                      or RiskFlag.UNLIMITED_APPROVAL in flags),
    )
