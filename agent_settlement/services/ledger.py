"""Read-only ledger access: transactions, receipts, ERC-20 transfer decoding.

Every RPC call carries a bounded timeout. Any provider failure surfaces as
LedgerUnavailable so the verifier can report it as retryable instead of
treating it as an accepted or rejected payment.
"""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from functools import lru_cache
from typing import TypeVar

from eth_abi import decode as abi_decode
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound

from agent_settlement.config import settings
from agent_settlement.errors import LedgerUnavailable, UndecodableTransfer

logger = logging.getLogger(__name__)

T = TypeVar("T")

# keccak256("transfer(address,uint256)")[:4]
TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")
_TRANSFER_ARGS_LENGTH = 64  # two 32-byte ABI words


@dataclass(frozen=True)
class LedgerTransaction:
    tx_hash: str
    sender: str
    to: str | None
    value: int
    input: bytes
    block_number: int | None


@dataclass(frozen=True)
class LedgerReceipt:
    status: int
    block_number: int


@dataclass(frozen=True)
class TransferCall:
    to: str
    amount: int


def _hexbytes(value: object) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith("0x"):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise UndecodableTransfer("Transaction input is not valid hex") from e


def decode_transfer(tx: LedgerTransaction) -> TransferCall:
    """Decode an ERC-20 ``transfer(address,uint256)`` call from transaction input."""
    data = tx.input
    if len(data) < 4 or data[:4] != TRANSFER_SELECTOR:
        raise UndecodableTransfer("Transaction is not an ERC-20 transfer call")
    if len(data) < 4 + _TRANSFER_ARGS_LENGTH:
        raise UndecodableTransfer("Transfer call data is truncated")
    try:
        to, amount = abi_decode(["address", "uint256"], data[4:4 + _TRANSFER_ARGS_LENGTH])
    except Exception as e:
        raise UndecodableTransfer("Transfer call data could not be decoded") from e
    return TransferCall(to=to.lower(), amount=int(amount))


class LedgerClient:
    """Thin async wrapper over an EVM JSON-RPC endpoint."""

    def __init__(self, rpc_url: str, timeout_seconds: float, w3: AsyncWeb3 | None = None) -> None:
        self.rpc_url = rpc_url
        self.timeout_seconds = timeout_seconds
        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds})
        )

    async def _call(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except TransactionNotFound:
            raise
        except asyncio.TimeoutError as e:
            logger.warning("Ledger %s timed out after %ss", what, self.timeout_seconds)
            raise LedgerUnavailable("Blockchain node did not answer in time") from e
        except Exception as e:
            logger.warning("Ledger %s failed: %s", what, e)
            raise LedgerUnavailable() from e

    async def fetch_transaction(self, tx_hash: str) -> LedgerTransaction | None:
        """Return the transaction, or None when the node does not know the hash."""
        try:
            tx = await self._call(self.w3.eth.get_transaction(tx_hash), "getTransactionByHash")
        except TransactionNotFound:
            return None
        if tx is None:
            return None
        to = tx.get("to")
        return LedgerTransaction(
            tx_hash=tx_hash.lower(),
            sender=str(tx["from"]).lower(),
            to=str(to).lower() if to else None,
            value=int(tx.get("value", 0)),
            input=_hexbytes(tx.get("input")),
            block_number=tx.get("blockNumber"),
        )

    async def fetch_receipt(self, tx_hash: str) -> LedgerReceipt | None:
        """Return the receipt, or None while the transaction is still pending."""
        try:
            receipt = await self._call(
                self.w3.eth.get_transaction_receipt(tx_hash), "getTransactionReceipt"
            )
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return LedgerReceipt(status=int(receipt["status"]), block_number=int(receipt["blockNumber"]))

    async def block_number(self) -> int:
        return int(await self._call(self.w3.eth.block_number, "blockNumber"))


@lru_cache
def get_ledger_client() -> LedgerClient:
    """FastAPI dependency; one client (and HTTP session) per process."""
    return LedgerClient(settings.resolved_rpc_url, settings.rpc_timeout_seconds)
