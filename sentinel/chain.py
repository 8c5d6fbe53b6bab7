"""
Chain Backend

JSON-RPC access to the local/forked EVM node over httpx, plus the ABI
helpers the simulator needs for ERC-20 reads and the approve/drain calls.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from sentinel.config import CHAIN_PROBE_TIMEOUT_SECONDS, RPC_URL

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ChainError(RuntimeError):
    """JSON-RPC call failed or a transaction reverted."""


class ChainUnavailableError(ChainError):
    """The node could not be reached at all."""


# ---------------------------------------------------------------------------
# ABI helpers
# ---------------------------------------------------------------------------

SELECTOR_APPROVE = "095ea7b3"     # approve(address,uint256)
SELECTOR_BALANCE_OF = "70a08231"  # balanceOf(address)
SELECTOR_ALLOWANCE = "dd62ed3e"   # allowance(address,address)
SELECTOR_DRAIN = "01838f93"       # drain(address,address,address)


def _encode_address(address: str) -> str:
    return address.lower().removeprefix("0x").rjust(64, "0")


def _encode_uint(value: int | str) -> str:
    number = int(value)
    if number < 0 or number >= 2 ** 256:
        raise ValueError(f"uint256 out of range: {value}")
    return format(number, "064x")


def encode_approve(spender: str, amount: str) -> str:
    return "0x" + SELECTOR_APPROVE + _encode_address(spender) + _encode_uint(amount)


def encode_balance_of(owner: str) -> str:
    return "0x" + SELECTOR_BALANCE_OF + _encode_address(owner)


def encode_allowance(owner: str, spender: str) -> str:
    return "0x" + SELECTOR_ALLOWANCE + _encode_address(owner) + _encode_address(spender)


def encode_drain(token: str, owner: str, to: str) -> str:
    return ("0x" + SELECTOR_DRAIN + _encode_address(token)
            + _encode_address(owner) + _encode_address(to))


def decode_uint(data: str) -> int:
    stripped = (data or "0x").removeprefix("0x")
    return int(stripped, 16) if stripped else 0


# ---------------------------------------------------------------------------
# JSON-RPC client
# ---------------------------------------------------------------------------

class JsonRpcClient:
    """Minimal async JSON-RPC 2.0 client."""

    def __init__(self, rpc_url: str = RPC_URL, timeout: float | None = None):
        self.rpc_url = rpc_url
        self._client = httpx.AsyncClient(timeout=timeout)
        self._next_id = 0

    async def call(self, method: str, params: list | None = None,
                   timeout: float | None = None) -> Any:
        self._next_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params or [],
        }
        kwargs = {"timeout": timeout} if timeout is not None else {}
        try:
            resp = await self._client.post(self.rpc_url, json=payload, **kwargs)
        except httpx.TransportError as exc:
            raise ChainUnavailableError(f"{method}: {exc!r}") from exc

        if resp.status_code >= 400:
            raise ChainError(f"{method}: HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise ChainUnavailableError(f"{method}: response is not JSON-RPC") from exc
        if not isinstance(body, dict):
            raise ChainUnavailableError(f"{method}: response is not JSON-RPC")
        if body.get("error"):
            err = body["error"]
            message = err.get("message", err) if isinstance(err, dict) else err
            raise ChainError(f"{method}: {message}")
        return body.get("result")

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------

RECEIPT_POLL_SECONDS = 0.25


class JsonRpcChainBackend:
    """Live chain access: ERC-20 reads and unlocked-account transactions."""

    def __init__(self, rpc: JsonRpcClient | None = None,
                 probe_timeout: float = CHAIN_PROBE_TIMEOUT_SECONDS):
        self.rpc = rpc or JsonRpcClient()
        self.probe_timeout = probe_timeout

    async def is_alive(self) -> bool:
        """Liveness probe bounded by the probe timeout."""
        try:
            await asyncio.wait_for(
                self.rpc.call("eth_blockNumber", timeout=self.probe_timeout),
                timeout=self.probe_timeout,
            )
            return True
        except (ChainError, asyncio.TimeoutError) as exc:
            logger.info("Chain probe failed against %s: %s", self.rpc.rpc_url, exc)
            return False

    async def block_number(self) -> int:
        return decode_uint(await self.rpc.call("eth_blockNumber"))

    async def balance_of(self, token: str, owner: str) -> int:
        result = await self.rpc.call(
            "eth_call", [{"to": token, "data": encode_balance_of(owner)}, "latest"],
        )
        return decode_uint(result)

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        result = await self.rpc.call(
            "eth_call",
            [{"to": token, "data": encode_allowance(owner, spender)}, "latest"],
        )
        return decode_uint(result)

    async def send_transaction(self, sender: str, to: str, data: str,
                               value: str = "0") -> dict:
        """Send from an unlocked node account and wait for inclusion.

        There is no caller-imposed timeout on inclusion.
        """
        tx_hash = await self.rpc.call("eth_sendTransaction", [{
            "from": sender,
            "to": to,
            "data": data,
            "value": hex(int(value)),
        }])
        receipt: Optional[dict] = None
        while receipt is None:
            receipt = await self.rpc.call("eth_getTransactionReceipt", [tx_hash])
            if receipt is None:
                await asyncio.sleep(RECEIPT_POLL_SECONDS)

        if receipt.get("status") == "0x0":
            raise ChainError(f"Transaction {tx_hash} reverted")
        return receipt

    async def aclose(self) -> None:
        await self.rpc.aclose()
