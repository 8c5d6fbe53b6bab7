"""
Runtime Configuration

Environment-driven constants, the judgment thresholds and the chain-state
descriptor (deployed token / malicious spender / demo wallets).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration (from env vars with defaults)
# ---------------------------------------------------------------------------

RPC_URL = os.environ.get("RPC_URL", "http://127.0.0.1:8545")
CHAIN_STATE_PATH = Path(os.environ.get(
    "CHAIN_STATE_PATH",
    str(Path(__file__).resolve().parent.parent / "chain" / "state.json"),
))
CHAIN_MODE = os.environ.get("CHAIN_MODE", "auto").lower()  # auto | live | mock
CHAIN_PROBE_TIMEOUT_SECONDS = float(os.environ.get("CHAIN_PROBE_TIMEOUT_SECONDS", "2.0"))

DATABASE_URL = os.environ.get("DATABASE_URL", "")

RUN_RETENTION_SECONDS = int(os.environ.get("RUN_RETENTION_SECONDS", "3600"))
STREAM_KEEPALIVE_SECONDS = float(os.environ.get("STREAM_KEEPALIVE_SECONDS", "15"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text | json

# 2**256 - 1, the "unlimited" approval sentinel
MAX_UINT256 = str(2 ** 256 - 1)

# Demo token is USDT-like: six decimals
TOKEN_DECIMALS = 6


# ---------------------------------------------------------------------------
# Judgment thresholds
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JudgmentThresholds:
    """Amount bands (display units) and the large-approval ratio."""
    allow_below: Decimal = Decimal("500")
    block_at: Decimal = Decimal("800")
    large_approval_ratio: Decimal = Decimal("0.20")

    @classmethod
    def from_env(cls) -> "JudgmentThresholds":
        return cls(
            allow_below=Decimal(os.environ.get("JUDGE_ALLOW_BELOW", "500")),
            block_at=Decimal(os.environ.get("JUDGE_BLOCK_AT", "800")),
            large_approval_ratio=Decimal(
                os.environ.get("JUDGE_LARGE_APPROVAL_RATIO", "0.20")
            ),
        )


# ---------------------------------------------------------------------------
# Chain-state descriptor
# ---------------------------------------------------------------------------

DEFAULT_TOKEN_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
DEFAULT_MALICIOUS_SPENDER = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
DEFAULT_USER_WALLET = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
DEFAULT_USER_BALANCE = str(1000 * 10 ** TOKEN_DECIMALS)

# Second address the mock chain treats as a drainer
KNOWN_DRAINER = "0x1F95a95810FB99bb2781545b89E2791AD87DfAFb"


@dataclass(frozen=True)
class ChainState:
    token_address: str = DEFAULT_TOKEN_ADDRESS
    token_symbol: str = "USDT"
    token_decimals: int = TOKEN_DECIMALS
    malicious_spender: str = DEFAULT_MALICIOUS_SPENDER
    user_wallet: str = DEFAULT_USER_WALLET
    initial_balance: str = DEFAULT_USER_BALANCE

    def to_dict(self) -> dict:
        """Same shape as the deploy script's state.json."""
        return {
            "contracts": {
                "mockUSDT": {
                    "address": self.token_address,
                    "symbol": self.token_symbol,
                    "decimals": self.token_decimals,
                },
                "maliciousSpender": {"address": self.malicious_spender},
            },
            "wallets": {
                "user": self.user_wallet,
                "maliciousSpender": self.malicious_spender,
            },
            "initialState": {"userBalance": self.initial_balance},
        }


def load_chain_state(path: Path = CHAIN_STATE_PATH) -> ChainState:
    """Read the deployed-contract descriptor, falling back to dev-chain defaults."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not load chain state from %s (%s), using defaults", path, exc)
        return ChainState()

    contracts = data.get("contracts", {})
    token = contracts.get("mockUSDT", {})
    wallets = data.get("wallets", {})
    malicious = (
        contracts.get("maliciousSpender", {}).get("address")
        or wallets.get("maliciousSpender")
        or DEFAULT_MALICIOUS_SPENDER
    )
    return ChainState(
        token_address=token.get("address", DEFAULT_TOKEN_ADDRESS),
        token_symbol=token.get("symbol", "USDT"),
        token_decimals=int(token.get("decimals", TOKEN_DECIMALS)),
        malicious_spender=malicious,
        user_wallet=wallets.get("user", DEFAULT_USER_WALLET),
        initial_balance=str(
            data.get("initialState", {}).get("userBalance", DEFAULT_USER_BALANCE)
        ),
    )
