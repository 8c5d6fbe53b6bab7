"""
Intent Parser

Turns a free-text request ("Approve 10 USDT to 0x...") into a structured
ERC-20 approval intent. Only approvals are recognised; any message that
names an approval keyword and a spender always resolves to some intent.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation, localcontext

from sentinel.config import MAX_UINT256, ChainState

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class IntentError(ValueError):
    """Message could not be turned into an approval intent."""


class UnsupportedIntentError(IntentError):
    pass


class MissingSpenderError(IntentError):
    pass


class AmountOutOfRangeError(IntentError):
    pass


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenRef:
    symbol: str
    address: str


@dataclass(frozen=True)
class Intent:
    token: TokenRef
    spender: str
    amount: str             # base units, decimal string
    amount_formatted: str   # "10 USDT" / "unlimited"
    is_unlimited: bool
    type: str = "erc20_approve"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "token": asdict(self.token),
            "spender": self.spender,
            "amount": self.amount,
            "amountFormatted": self.amount_formatted,
            "isUnlimited": self.is_unlimited,
        }


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

APPROVAL_KEYWORDS = ("approve", "allow", "permit", "authorize")
UNLIMITED_KEYWORDS = ("unlimited", "max", "forever")

# Checked only when no literal address is present
SPENDER_ALIASES = {
    "uniswap": "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D",
    "pancakeswap": "0x10ED43C718714eb63d5aA57B78B54704E256024E",
    "test": "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512",
}

ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]{40}")
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")

DEFAULT_AMOUNT = Decimal("10")

# Enough digits for any uint256 plus its fractional part
AMOUNT_PRECISION = 120

UNSUPPORTED_MESSAGE = (
    'I only support and analyze "Approval" transactions right now. '
    'Try saying: "Approve 10 USDT to 0x..."'
)
AMOUNT_OUT_OF_RANGE_MESSAGE = (
    "That amount is larger than any ERC-20 allowance can hold. "
    'Say "unlimited" if you mean the maximum approval.'
)
MISSING_SPENDER_MESSAGE = (
    "I couldn't find a valid spender address (0x...) or known contract name "
    "in your message. Please provide a full Ethereum address."
)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _find_spender(message: str, lowered: str) -> str:
    match = ADDRESS_RE.search(message)
    if match:
        return match.group(0)
    for alias, address in SPENDER_ALIASES.items():
        if alias in lowered:
            return address
    raise MissingSpenderError(MISSING_SPENDER_MESSAGE)


def _format_amount(amount: Decimal) -> str:
    with localcontext() as ctx:
        ctx.prec = AMOUNT_PRECISION
        return f"{amount.normalize():f}"


def _extract_amount(message: str, lowered: str, decimals: int,
                    symbol: str) -> tuple[str, str, bool]:
    """Return (raw base units, formatted, is_unlimited)."""
    if any(word in lowered for word in UNLIMITED_KEYWORDS):
        return MAX_UINT256, "unlimited", True

    amount = DEFAULT_AMOUNT
    # Skip the digits inside a 0x address so "to 0x1111..." is not an amount
    scrubbed = ADDRESS_RE.sub(" ", message)
    match = NUMBER_RE.search(scrubbed)
    if match:
        try:
            amount = Decimal(match.group(0))
        except InvalidOperation:
            amount = DEFAULT_AMOUNT

    with localcontext() as ctx:
        ctx.prec = AMOUNT_PRECISION
        raw = int(amount.scaleb(decimals))
    if raw > int(MAX_UINT256):
        raise AmountOutOfRangeError(AMOUNT_OUT_OF_RANGE_MESSAGE)
    return str(raw), f"{_format_amount(amount)} {symbol}", False


def parse_intent(message: str, chain_state: ChainState | None = None) -> Intent:
    """Parse *message* into an approval Intent.

    Raises UnsupportedIntentError when no approval keyword is present and
    MissingSpenderError when neither an address nor a known alias is found.
    AmountOutOfRangeError when the amount does not fit in a uint256.
    A missing amount falls back to 10 tokens.
    """
    chain_state = chain_state or ChainState()
    cleaned = message.strip()
    lowered = cleaned.lower()

    if not any(word in lowered for word in APPROVAL_KEYWORDS):
        raise UnsupportedIntentError(UNSUPPORTED_MESSAGE)

    spender = _find_spender(cleaned, lowered)
    raw, formatted, unlimited = _extract_amount(
        cleaned, lowered, chain_state.token_decimals, chain_state.token_symbol,
    )

    return Intent(
        token=TokenRef(symbol=chain_state.token_symbol,
                       address=chain_state.token_address),
        spender=spender,
        amount=raw,
        amount_formatted=formatted,
        is_unlimited=unlimited,
    )
