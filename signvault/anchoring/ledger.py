"""Ledger clients.

``LedgerClient`` is the narrow surface the anchoring service needs.
``Web3Ledger`` implements it over JSON-RPC with web3.py, trying a list of
endpoints in order and signing locally with eth-account.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import anyio
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound

from signvault.errors import AnchoringError, LedgerUnavailableError

logger = logging.getLogger(__name__)

BURN_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass
class AnchorReceipt:
    tx_id: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class LedgerClient(ABC):
    address: str
    network: str = "unknown"

    @abstractmethod
    async def connect(self) -> None:
        """Select a live endpoint. Raises LedgerUnavailableError if none answers."""

    @abstractmethod
    async def estimate_gas(self, data_hex: str) -> int: ...

    @abstractmethod
    async def gas_price(self) -> int: ...

    @abstractmethod
    async def get_balance(self) -> int: ...

    @abstractmethod
    async def submit(self, data_hex: str, gas_limit: int, gas_price: int) -> str:
        """Sign and broadcast a zero-value transaction carrying ``data_hex``."""

    @abstractmethod
    async def wait_for_confirmation(self, tx_id: str, timeout: float) -> AnchorReceipt:
        """Block until the transaction is mined (one confirmation)."""

    @abstractmethod
    async def get_transaction_input(self, tx_id: str) -> Optional[str]:
        """Hex payload of a mined transaction, or None if unknown."""

    async def close(self) -> None:
        return None


class Web3Ledger(LedgerClient):
    """
    EVM JSON-RPC ledger (Polygon by default).

    One instance is shared by every worker. The selected endpoint is kept
    while it answers, and submissions are serialized so concurrent anchors
    never sign with the same nonce.
    """

    network = "polygon"

    def __init__(
        self,
        rpc_urls: list[str],
        private_key: str,
        request_timeout: float = 30.0,
    ):
        if not rpc_urls:
            raise ValueError("At least one RPC URL is required")
        self.rpc_urls = list(rpc_urls)
        self.request_timeout = request_timeout
        self._account = Account.from_key(private_key)
        self.address = self._account.address
        self.rpc_url: Optional[str] = None
        self._w3: Optional[AsyncWeb3] = None
        self._retired: list[AsyncWeb3] = []
        self._next_nonce: Optional[int] = None
        self._connect_lock = anyio.Lock()
        self._send_lock = anyio.Lock()

    @property
    def _eth(self):
        if self._w3 is None:
            raise LedgerUnavailableError("Ledger client is not connected")
        return self._w3.eth

    def _make_web3(self, url: str) -> AsyncWeb3:
        return AsyncWeb3(AsyncHTTPProvider(url))

    async def _block_number(self, w3: AsyncWeb3, url: str) -> Optional[int]:
        """Current block number, or None if the endpoint does not answer."""
        try:
            with anyio.fail_after(self.request_timeout):
                return await w3.eth.block_number
        except Exception as e:
            logger.warning(f"RPC endpoint {url} failed liveness check: {e}")
            return None

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._w3 is not None:
                if await self._block_number(self._w3, self.rpc_url) is not None:
                    return
                # Other tasks may still hold the old provider; close() disconnects it
                self._retired.append(self._w3)
                self._w3 = None
                self.rpc_url = None

            failed = []
            for url in self.rpc_urls:
                w3 = self._make_web3(url)
                block_number = await self._block_number(w3, url)
                if block_number is None:
                    failed.append(url)
                    await w3.provider.disconnect()
                    continue

                self._w3 = w3
                self.rpc_url = url
                logger.info(f"Connected to ledger RPC {url} at block {block_number}")
                return

        raise LedgerUnavailableError(
            "No RPC endpoint passed the liveness check: " + ", ".join(failed)
        )

    def _transaction(self, data_hex: str) -> dict[str, Any]:
        return {
            "from": self.address,
            "to": BURN_ADDRESS,
            "value": 0,
            "data": data_hex,
        }

    async def estimate_gas(self, data_hex: str) -> int:
        with anyio.fail_after(self.request_timeout):
            return int(await self._eth.estimate_gas(self._transaction(data_hex)))

    async def gas_price(self) -> int:
        with anyio.fail_after(self.request_timeout):
            return int(await self._eth.gas_price)

    async def get_balance(self) -> int:
        with anyio.fail_after(self.request_timeout):
            return int(await self._eth.get_balance(self.address))

    def _sign(self, transaction: dict[str, Any]) -> bytes:
        return bytes(self._account.sign_transaction(transaction).raw_transaction)

    async def submit(self, data_hex: str, gas_limit: int, gas_price: int) -> str:
        # Nonce lookup, signing and broadcast must not interleave between tasks
        async with self._send_lock:
            eth = self._eth
            with anyio.fail_after(self.request_timeout):
                pending = await eth.get_transaction_count(self.address, "pending")
                chain_id = await eth.chain_id

            nonce = max(pending, self._next_nonce or 0)
            transaction = {
                **self._transaction(data_hex),
                "gas": gas_limit,
                "gasPrice": gas_price,
                "nonce": nonce,
                "chainId": chain_id,
            }
            raw_transaction = self._sign(transaction)

            with anyio.fail_after(self.request_timeout):
                tx_hash = await eth.send_raw_transaction(raw_transaction)
            self._next_nonce = nonce + 1

        tx_id = _to_hex(tx_hash)
        logger.info(
            f"Submitted anchoring transaction {tx_id} (nonce {nonce}) via {self.rpc_url}"
        )
        return tx_id

    async def wait_for_confirmation(self, tx_id: str, timeout: float) -> AnchorReceipt:
        try:
            receipt = await self._eth.wait_for_transaction_receipt(
                tx_id, timeout=timeout
            )
        except TimeExhausted as e:
            raise AnchoringError(
                f"Transaction {tx_id} not confirmed within {timeout}s"
            ) from e

        if receipt.get("status") != 1:
            raise AnchoringError(f"Transaction {tx_id} reverted")

        return AnchorReceipt(
            tx_id=tx_id,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )

    async def get_transaction_input(self, tx_id: str) -> Optional[str]:
        try:
            with anyio.fail_after(self.request_timeout):
                transaction = await self._eth.get_transaction(tx_id)
        except TransactionNotFound:
            return None
        return _to_hex(transaction.get("input", b""))

    async def close(self) -> None:
        providers = [*self._retired, *([self._w3] if self._w3 is not None else [])]
        for w3 in providers:
            await w3.provider.disconnect()
        self._retired = []
        self._w3 = None
        self.rpc_url = None
