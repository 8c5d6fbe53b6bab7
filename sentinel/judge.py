"""
Judgment Engine

Deterministic rule table mapping (intent, reality delta) to an
ALLOW / DENY verdict with reasoning and override eligibility.
Pure function of its inputs: no I/O, no hidden state.

Rule order (first match wins):
  1. Hard DENY   malicious spender | unlimited approval | amount >= block_at
  2. ALLOW       amount < allow_below
  3. PENDING     allow_below <= amount < block_at (DENY, override allowed)
  4. Risky DENY  anything else (override allowed)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from sentinel.analyze import RealityDelta, RiskFlag
from sentinel.config import MAX_UINT256, ChainState, JudgmentThresholds
from sentinel.intent import Intent
from sentinel.simulate import SimulationResult


class Verdict(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


@dataclass
class Judgment:
    judgment: Verdict
    reasoning_bullets: list[str] = field(default_factory=list)
    adversarial_question: str = ""
    override_allowed: bool = False
    monitor_mode_override: Optional[bool] = None
    warning: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.judgment == Verdict.DENY and self.override_allowed

    def apply_monitor_override(self, warning: str) -> None:
        """Present the verdict as ALLOW under monitor mode. One-shot."""
        if self.monitor_mode_override:
            raise RuntimeError("Monitor-mode override already applied")
        self.judgment = Verdict.ALLOW
        self.monitor_mode_override = True
        self.warning = warning

    def to_dict(self) -> dict:
        out = {
            "judgment": self.judgment.value,
            "reasoning_bullets": list(self.reasoning_bullets),
            "adversarial_question": self.adversarial_question,
            "override_allowed": self.override_allowed,
        }
        if self.monitor_mode_override is not None:
            out["monitor_mode_override"] = self.monitor_mode_override
        if self.warning is not None:
            out["warning"] = self.warning
        return out


def _fmt(value: Decimal) -> str:
    return f"{value.normalize():f}"


def approval_amount(intent: Intent, decimals: int) -> Decimal:
    """Approval amount in display units."""
    return Decimal(intent.amount) / (Decimal(10) ** decimals)


# ---------------------------------------------------------------------------
# Narratives
# ---------------------------------------------------------------------------

def _deny_narrative(amount: Decimal, symbol: str, over_limit: bool,
                    malicious: bool, unlimited: bool, delta: RealityDelta,
                    thresholds: JudgmentThresholds) -> Judgment:
    """Pick the deny narrative by precedence:
    limit > malicious > unlimited > drained > large > generic.

    judge() calls this only once one of over_limit, malicious or unlimited
    holds, so from there only the first three narratives are selected. The
    drained, large-approval and generic narratives apply to callers that
    pass all three as False.
    """
    if over_limit:
        return Judgment(
            judgment=Verdict.DENY,
            reasoning_bullets=[
                f"Approval of {_fmt(amount)} {symbol} exceeds the "
                f"{_fmt(thresholds.block_at)} {symbol} hard limit",
                "Amounts at or above the limit are blocked without exception",
            ],
            adversarial_question=(
                f"This approval is above the {_fmt(thresholds.block_at)} {symbol} limit. "
                "Can the spender work with a smaller allowance?"
            ),
            override_allowed=False,
        )
    if malicious:
        return Judgment(
            judgment=Verdict.DENY,
            reasoning_bullets=[
                "Spender is in malicious list",
                "Simulation shows complete fund drain",
            ],
            adversarial_question=(
                "This approval gives permanent spending power and simulation "
                "shows your funds reach 0. Why is this acceptable?"
            ),
            override_allowed=False,
        )
    if unlimited:
        return Judgment(
            judgment=Verdict.DENY,
            reasoning_bullets=[
                "Unlimited approval detected",
                "Grants permanent spending authority",
            ],
            adversarial_question=(
                "This gives unlimited access to your tokens forever. "
                "Are you sure this is necessary?"
            ),
            override_allowed=False,
        )
    if delta.has(RiskFlag.BALANCE_DRAINED):
        return Judgment(
            judgment=Verdict.DENY,
            reasoning_bullets=[
                "Simulation shows complete balance drain",
                "All funds will be transferrable",
            ],
            adversarial_question=(
                "The simulation shows your balance going to zero. "
                "This action is blocked for your safety."
            ),
            override_allowed=False,
        )
    if delta.has(RiskFlag.LARGE_APPROVAL):
        ratio = _fmt(thresholds.large_approval_ratio * 100)
        return Judgment(
            judgment=Verdict.DENY,
            reasoning_bullets=[
                f"Large approval amount detected (> {ratio}% of balance)",
                "Exceeds safe threshold for token approvals",
            ],
            adversarial_question=(
                f"This approval is for more than {ratio}% of your balance. "
                "Have you verified the spender's legitimacy?"
            ),
            override_allowed=True,
        )
    return Judgment(
        judgment=Verdict.DENY,
        reasoning_bullets=["Approval violates a hard safety rule"],
        adversarial_question="Why should this approval be granted?",
        override_allowed=False,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def judge(intent: Intent, delta: RealityDelta, sim: SimulationResult,
          chain_state: ChainState | None = None,
          thresholds: JudgmentThresholds | None = None) -> Judgment:
    """Apply the decision table. *sim* is accepted for parity with the
    pipeline stage signature; the rules read only intent and delta."""
    chain_state = chain_state or ChainState()
    thresholds = thresholds or JudgmentThresholds()
    symbol = intent.token.symbol
    amount = approval_amount(intent, chain_state.token_decimals)

    malicious = (intent.spender.lower() == chain_state.malicious_spender.lower()
                 or delta.has(RiskFlag.MALICIOUS_SPENDER))
    unlimited = intent.is_unlimited or delta.delta.allowance_after == MAX_UINT256
    over_limit = not intent.is_unlimited and amount >= thresholds.block_at

    if malicious or unlimited or over_limit:
        return _deny_narrative(amount, symbol, over_limit, malicious, unlimited,
                               delta, thresholds)

    if amount < thresholds.allow_below:
        return Judgment(
            judgment=Verdict.ALLOW,
            reasoning_bullets=[
                f"Approval amount is below the {_fmt(thresholds.allow_below)} "
                f"{symbol} auto-approve threshold",
                "Spender is not on the malicious list",
                "No critical simulation risks detected",
            ],
            adversarial_question=(
                "If this spender misbehaves, you can revoke later. "
                "Do you still want to proceed?"
            ),
            override_allowed=True,
        )

    if amount < thresholds.block_at:
        return Judgment(
            judgment=Verdict.DENY,
            reasoning_bullets=[
                f"Approval amount falls in the {_fmt(thresholds.allow_below)}-"
                f"{_fmt(thresholds.block_at)} {symbol} manual review band",
                "Pending: a justification is required before signing",
            ],
            adversarial_question=(
                "This approval needs manual review. "
                "Why do you need this allowance for this spender?"
            ),
            override_allowed=True,
        )

    return Judgment(
        judgment=Verdict.DENY,
        reasoning_bullets=[
            "Approval amount exceeds safe threshold",
            "Potential risk to funds",
            "Override available with justification",
        ],
        adversarial_question=(
            "This approval seems risky. Why do you believe this spender is trustworthy?"
        ),
        override_allowed=True,
    )
