"""Async JSON-RPC client that commits certificate payloads to an EVM ledger."""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
from eth_account import Account

from hallmark.errors import LedgerError
from hallmark.payload import build_payload, decode_payload, encode_payload, format_certificate_message
from hallmark.record import CertificateRecord, LedgerReference

logger = logging.getLogger(__name__)
audit = logging.getLogger("hallmark.audit")


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class LedgerRPCError(LedgerError):
    """HTTP error status or JSON-RPC ``error`` member."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        rpc_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.rpc_code = rpc_code


class LedgerConnectionError(LedgerError):
    """Network/DNS failure reaching the RPC endpoint."""


class LedgerTimeoutError(LedgerError):
    """Request timeout, or no receipt within the confirmation window."""


class FeeCeilingError(LedgerError):
    """Estimated fee exceeds the configured ceiling."""


class TransactionRejectedError(LedgerError):
    """Transaction was mined but reverted (receipt status 0)."""


class ReferenceNotFoundError(LedgerError):
    """No transaction exists for the given hash."""


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

_WEI_PER_ETHER = 10 ** 18
_DEFAULT_GAS_PRICE = 20_000_000_000  # 20 gwei, when the node reports none

_NETWORK_NAMES: dict[int, str] = {
    1: "mainnet",
    137: "matic",
    80001: "maticmum",
    80002: "matic-amoy",
    11155111: "sepolia",
}


def wei_to_ether_string(wei: int) -> str:
    """Format wei as a decimal ether string (``1.0``, ``0.25``), without float drift."""
    if wei < 0:
        raise ValueError(f"wei must be non-negative, got {wei}")
    whole, frac = divmod(wei, _WEI_PER_ETHER)
    frac_str = f"{frac:018d}".rstrip("0") or "0"
    return f"{whole}.{frac_str}"


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


@dataclass(frozen=True)
class FeeEstimate:
    gas_limit: int
    gas_price: int

    @property
    def max_fee(self) -> int:
        return self.gas_limit * self.gas_price

    def to_dict(self) -> dict[str, int]:
        return {"gas_limit": self.gas_limit, "gas_price": self.gas_price}


@dataclass(frozen=True)
class LedgerReceipt:
    """Confirmed commit of one certificate payload."""

    transaction_hash: str
    block_number: int
    gas_used: str
    explorer_link: str
    timestamp: str

    @property
    def reference(self) -> LedgerReference:
        return LedgerReference(self.transaction_hash, self.explorer_link)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "explorer_link": self.explorer_link,
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class LedgerWriter:
    """Commits certificate payloads as self-addressed transactions.

    Constructor accepts explicit params; no env-var loading. Transactions
    are signed locally and submitted with ``eth_sendRawTransaction``.

    ``commit()`` holds a per-writer lock from nonce lookup through receipt,
    so commits for the signing account never interleave.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        chain_id: int | None = None,
        explorer_base_url: str = "",
        gas_limit_multiplier: float = 1.2,
        max_gas_price: int = 50_000_000_000,
        max_fee_wei: int | None = None,
        confirmation_timeout_secs: float = 120.0,
        poll_interval_secs: float = 2.0,
    ) -> None:
        self._rpc_url = rpc_url
        self._account = Account.from_key(private_key)
        self._chain_id = chain_id
        self._explorer_base_url = explorer_base_url
        self._gas_limit_multiplier = gas_limit_multiplier
        self._max_gas_price = max_gas_price
        self._max_fee_wei = max_fee_wei
        self._confirmation_timeout = confirmation_timeout_secs
        self._poll_interval = poll_interval_secs
        self._commit_lock = asyncio.Lock()
        self._request_ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0),
        )

    @property
    def address(self) -> str:
        return self._account.address

    def explorer_link(self, tx_hash: str) -> str:
        return f"{self._explorer_base_url}{tx_hash}"

    # -- internal request dispatcher -----------------------------------------

    async def _rpc(self, method: str, params: list[Any] | None = None) -> Any:
        """Send a JSON-RPC call and map errors to the ledger exception hierarchy."""
        request = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params or [],
        }
        try:
            response = await self._client.post(self._rpc_url, json=request)
        except httpx.ConnectError as exc:
            raise LedgerConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise LedgerTimeoutError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise LedgerError(f"{method} failed: {exc}") from exc

        if response.status_code >= 400:
            raise LedgerRPCError(response.text, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerRPCError(f"{method}: invalid JSON-RPC response") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            if isinstance(error, dict):
                raise LedgerRPCError(
                    f"{method}: {error.get('message', 'unknown error')}",
                    rpc_code=error.get("code"),
                )
            raise LedgerRPCError(f"{method}: {error}")
        return body.get("result") if isinstance(body, dict) else None

    # -- connection / account -------------------------------------------------

    async def get_balance(self) -> str:
        """Signing account balance in ether."""
        wei = _to_int(await self._rpc("eth_getBalance", [self.address, "latest"]))
        return wei_to_ether_string(wei)

    async def get_network_info(self) -> dict[str, Any]:
        chain_id = _to_int(await self._rpc("eth_chainId"))
        block_number = _to_int(await self._rpc("eth_blockNumber"))
        return {
            "name": _NETWORK_NAMES.get(chain_id, "unknown"),
            "chain_id": chain_id,
            "block_number": block_number,
            "is_correct_network": self._chain_id is None or chain_id == self._chain_id,
        }

    async def check_connection(self) -> dict[str, Any]:
        """Report network and wallet status. Never raises."""
        try:
            chain_id = _to_int(await self._rpc("eth_chainId"))
            balance = await self.get_balance()
        except LedgerError as e:
            return {"connected": False, "error": str(e)}
        return {
            "connected": True,
            "network": {
                "name": _NETWORK_NAMES.get(chain_id, "unknown"),
                "chain_id": chain_id,
            },
            "wallet": {"address": self.address, "balance": balance},
        }

    # -- fees -----------------------------------------------------------------

    async def estimate_fee(self, data: bytes) -> FeeEstimate:
        """Gas limit with safety multiplier and gas price capped at the ceiling."""
        gas = _to_int(await self._rpc(
            "eth_estimateGas",
            [{"from": self.address, "to": self.address, "data": "0x" + data.hex()}],
        ))
        raw_price = await self._rpc("eth_gasPrice")
        gas_price = _to_int(raw_price) if raw_price else _DEFAULT_GAS_PRICE

        estimate = FeeEstimate(
            gas_limit=math.ceil(gas * self._gas_limit_multiplier),
            gas_price=min(gas_price, self._max_gas_price),
        )
        if self._max_fee_wei is not None and estimate.max_fee > self._max_fee_wei:
            raise FeeCeilingError(
                f"Estimated fee {estimate.max_fee:,} wei exceeds ceiling "
                f"{self._max_fee_wei:,} wei"
            )
        return estimate

    # -- commit ---------------------------------------------------------------

    async def commit(self, record: CertificateRecord) -> LedgerReceipt:
        """Write ``record``'s payload to the ledger and wait for inclusion.

        Raises ``LedgerError`` on RPC failure, fee ceiling breach, timeout or
        a reverted transaction. Once a hash has been returned by the node it
        is logged, so a caller can ``verify()`` it before retrying.
        """
        data = encode_payload(build_payload(record))

        async with self._commit_lock:
            fee = await self.estimate_fee(data)
            nonce = _to_int(await self._rpc(
                "eth_getTransactionCount", [self.address, "pending"]
            ))
            chain_id = self._chain_id
            if chain_id is None:
                chain_id = _to_int(await self._rpc("eth_chainId"))

            signed = self._account.sign_transaction({
                "to": self.address,
                "value": 0,
                "data": "0x" + data.hex(),
                "gas": fee.gas_limit,
                "gasPrice": fee.gas_price,
                "nonce": nonce,
                "chainId": chain_id,
            })
            raw = "0x" + bytes(signed.raw_transaction).hex()
            tx_hash = await self._rpc("eth_sendRawTransaction", [raw])
            logger.info(
                "Transaction %s sent for serial %s (nonce %d, gas %d @ %d wei).",
                tx_hash, record.serial, nonce, fee.gas_limit, fee.gas_price,
            )

            try:
                receipt = await self._wait_for_receipt(tx_hash)
            except LedgerError as e:
                e.transaction_hash = e.transaction_hash or tx_hash
                raise

        status = receipt.get("status")
        if status is not None and _to_int(status) != 1:
            raise TransactionRejectedError(
                f"Transaction {tx_hash} for serial {record.serial} was reverted",
                transaction_hash=tx_hash,
            )

        audit.info(
            "Blockchain transaction",
            extra={
                "type": "BLOCKCHAIN_TRANSACTION",
                "serial": record.serial,
                "transaction_hash": tx_hash,
                "block_number": receipt.get("blockNumber"),
            },
        )

        return LedgerReceipt(
            transaction_hash=receipt.get("transactionHash") or tx_hash,
            block_number=_to_int(receipt.get("blockNumber", 0)),
            gas_used=str(_to_int(receipt.get("gasUsed", 0))),
            explorer_link=self.explorer_link(tx_hash),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        deadline = time.monotonic() + self._confirmation_timeout
        while True:
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                return receipt
            if time.monotonic() >= deadline:
                raise LedgerTimeoutError(
                    f"No receipt for transaction {tx_hash} after "
                    f"{self._confirmation_timeout:.0f}s; verify it before retrying",
                    transaction_hash=tx_hash,
                )
            await asyncio.sleep(self._poll_interval)

    # -- read back ------------------------------------------------------------

    async def verify(self, tx_hash: str) -> dict[str, Any]:
        """Look up a receipt. Returns ``found: False`` instead of raising."""
        try:
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        except LedgerError as e:
            return {"found": False, "error": str(e)}
        if not receipt:
            return {"found": False, "error": "Transaction not found"}
        return {
            "found": True,
            "block_number": _to_int(receipt.get("blockNumber", 0)),
            "gas_used": str(_to_int(receipt.get("gasUsed", 0))),
            "status": "success" if _to_int(receipt.get("status", 1)) == 1 else "failed",
            "explorer_link": self.explorer_link(tx_hash),
        }

    async def read(self, tx_hash: str) -> dict[str, Any]:
        """Decode the payload committed by ``tx_hash``.

        Non-canonical data is returned raw with ``is_readable: False``.
        Raises ``ReferenceNotFoundError`` if the transaction does not exist.
        """
        tx = await self._rpc("eth_getTransactionByHash", [tx_hash])
        if not tx:
            raise ReferenceNotFoundError(f"Transaction {tx_hash} not found")

        raw_input = str(tx.get("input") or tx.get("data") or "0x")
        try:
            data = bytes.fromhex(raw_input[2:] if raw_input.startswith("0x") else raw_input)
        except ValueError as exc:
            raise LedgerError(f"Transaction {tx_hash} has malformed input data") from exc

        payload = decode_payload(data)
        if payload is None:
            return {
                "success": True,
                "raw_data": data.decode("utf-8", errors="replace"),
                "is_readable": False,
                "message": "Data is not in the standard certificate format",
            }

        block = tx.get("blockNumber")
        return {
            "success": True,
            "transaction_hash": tx_hash,
            "block_number": _to_int(block) if block is not None else None,
            "certificate_data": payload,
            "certificate_message": format_certificate_message(payload),
            "is_readable": True,
            "explorer_link": self.explorer_link(tx_hash),
        }

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> LedgerWriter:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
