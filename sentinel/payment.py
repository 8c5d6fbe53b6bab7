"""
Payment Gate (x402)

Verifies that a submitted transaction hash is a confirmed native-token
payment of at least the run price to the configured receiver. The gate
never raises: every failure is a PaymentVerification with a reason code.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from sentinel.chain import ChainError, JsonRpcClient, decode_uint
from sentinel.config import RPC_URL

logger = logging.getLogger(__name__)

PAYMENT_MEMO = "OBS_SIMULATION_RUN"


class PaymentReason(str, Enum):
    MISSING_PAYMENT = "MISSING_PAYMENT"
    TX_NOT_FOUND = "TX_NOT_FOUND"
    TX_REVERTED = "TX_REVERTED"
    INVALID_RECEIVER = "INVALID_RECEIVER"
    INSUFFICIENT_AMOUNT = "INSUFFICIENT_AMOUNT"
    VERIFICATION_ERROR = "VERIFICATION_ERROR"


@dataclass(frozen=True)
class X402Config:
    pay_to: str = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
    price_wei: str = "100000000000000"
    chain_id: int = 31337
    rpc_url: str = RPC_URL

    @classmethod
    def from_env(cls) -> "X402Config":
        return cls(
            pay_to=os.environ.get("X402_PAY_TO", cls.pay_to),
            price_wei=os.environ.get("X402_PRICE_WEI", cls.price_wei),
            chain_id=int(os.environ.get("X402_CHAIN_ID", str(cls.chain_id))),
            rpc_url=os.environ.get("X402_RPC_URL", RPC_URL),
        )


@dataclass(frozen=True)
class PaymentVerification:
    ok: bool
    payer: Optional[str] = None
    amount_wei: Optional[str] = None
    reason: Optional[PaymentReason] = None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["amountWei"] = out.pop("amount_wei")
        if self.reason is not None:
            out["reason"] = self.reason.value
        return out


class PaymentGate:
    """
    Polls the payment chain for the transaction (RPC indexing can lag),
    then checks the receipt status, the receiver and the value.
    """

    def __init__(self, config: X402Config | None = None,
                 rpc: JsonRpcClient | None = None,
                 max_attempts: int = 30,
                 attempt_timeout: float = 3.0,
                 retry_delay: float = 1.0,
                 receipt_timeout: float = 5.0):
        self.config = config or X402Config.from_env()
        self.rpc = rpc or JsonRpcClient(self.config.rpc_url)
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.retry_delay = retry_delay
        self.receipt_timeout = receipt_timeout

    async def _fetch_transaction(self, tx_hash: str) -> Optional[dict]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                tx = await asyncio.wait_for(
                    self.rpc.call("eth_getTransactionByHash", [tx_hash]),
                    timeout=self.attempt_timeout,
                )
                if tx:
                    logger.info("Payment tx %s found on attempt %d", tx_hash, attempt)
                    return tx
            except asyncio.TimeoutError:
                logger.info("Attempt %d/%d timed out fetching %s",
                            attempt, self.max_attempts, tx_hash)
            except ChainError as exc:
                logger.warning("Attempt %d/%d error fetching %s: %s",
                               attempt, self.max_attempts, tx_hash, exc)

            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay)
        return None

    async def verify(self, tx_hash: str) -> PaymentVerification:
        try:
            return await self._verify(tx_hash)
        except Exception:
            logger.exception("x402 verification error for %s", tx_hash)
            return PaymentVerification(ok=False, reason=PaymentReason.VERIFICATION_ERROR)

    async def _verify(self, tx_hash: str) -> PaymentVerification:
        logger.info("Verifying payment tx %s on %s", tx_hash, self.config.rpc_url)
        tx = await self._fetch_transaction(tx_hash)
        if tx is None:
            logger.warning("Payment tx %s not found after %d attempts",
                           tx_hash, self.max_attempts)
            return PaymentVerification(ok=False, reason=PaymentReason.TX_NOT_FOUND)

        try:
            receipt = await asyncio.wait_for(
                self.rpc.call("eth_getTransactionReceipt", [tx_hash]),
                timeout=self.receipt_timeout,
            )
            if receipt and receipt.get("status") == "0x0":
                logger.warning("Payment tx %s reverted", tx_hash)
                return PaymentVerification(ok=False, reason=PaymentReason.TX_REVERTED)
        except (ChainError, asyncio.TimeoutError) as exc:
            # Receipt lookup is advisory; continue with the tx body
            logger.warning("Could not fetch receipt for %s (%s), continuing", tx_hash, exc)

        receiver = (tx.get("to") or "").lower()
        if receiver != self.config.pay_to.lower():
            logger.error("Invalid receiver. Expected %s, got %s",
                         self.config.pay_to, tx.get("to"))
            return PaymentVerification(ok=False, reason=PaymentReason.INVALID_RECEIVER)

        value = decode_uint(tx.get("value"))
        if value < int(self.config.price_wei):
            logger.error("Insufficient amount. Required %s, got %d",
                         self.config.price_wei, value)
            return PaymentVerification(ok=False, reason=PaymentReason.INSUFFICIENT_AMOUNT)

        logger.info("Payment %s verified", tx_hash)
        return PaymentVerification(ok=True, payer=tx.get("from"), amount_wei=str(value))

    async def aclose(self) -> None:
        await self.rpc.aclose()
