from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Any

from eth_account import Account

from account_pool.config import PoolConfig
from account_pool.errors import NetworkQueryError
from account_pool.models import Signer

LOGGER = logging.getLogger("account_pool.ledger")

TRANSFER_GAS_LIMIT = 21_000


class LedgerClient:
    """Async JSON-RPC client for balance queries and plain value transfers."""

    def __init__(self, config: PoolConfig, receipt_timeout_seconds: float = 120.0) -> None:
        self.config = config
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self._w3 = None
        self._nonce_locks: dict[str, asyncio.Lock] = {}
        self._nonce_waiters: dict[str, int] = {}

    @staticmethod
    def generate_keypair() -> tuple[str, str]:
        account = Account.create()
        return account.address, _key_hex(account.key)

    @staticmethod
    def derive_keypair(key_material: str) -> str:
        return Account.from_key(key_material).address

    def _web3(self):
        if self._w3 is not None:
            return self._w3
        try:
            from web3 import AsyncHTTPProvider, AsyncWeb3
        except Exception as exc:
            raise RuntimeError("web3 is required for ledger access. Install with `pip install web3`.") from exc

        provider = AsyncHTTPProvider(
            self.config.ledger_rpc_url,
            request_kwargs={"timeout": 30},
        )
        self._w3 = AsyncWeb3(provider)
        return self._w3

    @asynccontextmanager
    async def _nonce_lock(self, public_id: str):
        lock = self._nonce_locks.get(public_id)
        if lock is None:
            lock = asyncio.Lock()
            self._nonce_locks[public_id] = lock
        self._nonce_waiters[public_id] = self._nonce_waiters.get(public_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Senders are mostly one-shot pool accounts; forget the lock once idle.
            self._nonce_waiters[public_id] -= 1
            if not self._nonce_waiters[public_id]:
                del self._nonce_waiters[public_id]
                del self._nonce_locks[public_id]

    async def get_balance(self, public_id: str) -> int:
        try:
            w3 = self._web3()
            return int(await w3.eth.get_balance(w3.to_checksum_address(public_id)))
        except Exception as exc:
            raise NetworkQueryError(f"get_balance failed for {public_id}: {exc}") from exc

    async def submit_transfer(self, source: Signer, to: str, amount: int, priority_fee: int) -> str:
        if amount <= 0:
            raise ValueError("transfer amount must be positive")
        try:
            w3 = self._web3()
            sender = w3.to_checksum_address(source.public_id)
            recipient = w3.to_checksum_address(to)
            # Nonce fetch and broadcast must not interleave for the same sender.
            async with self._nonce_lock(sender):
                nonce = int(await w3.eth.get_transaction_count(sender, "pending"))
                gas_price = max(1, int(await w3.eth.gas_price))
                tx = {
                    "type": 2,
                    "chainId": int(self.config.ledger_chain_id),
                    "nonce": nonce,
                    "to": recipient,
                    "value": int(amount),
                    "gas": TRANSFER_GAS_LIMIT,
                    "maxPriorityFeePerGas": int(priority_fee),
                    "maxFeePerGas": gas_price + int(priority_fee),
                }
                signed = Account.sign_transaction(tx, source.key_material)
                raw_tx = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
                if raw_tx is None:
                    raise RuntimeError("unable to access signed raw transaction")
                tx_hash = await w3.eth.send_raw_transaction(raw_tx)
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout_seconds)
        except Exception as exc:
            raise NetworkQueryError(f"transfer {source.public_id} -> {to} failed: {exc}") from exc

        tx_hex = tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)
        if _receipt_status(receipt) != 1:
            raise NetworkQueryError(f"transfer {tx_hex} reverted")
        LOGGER.debug("transfer_confirmed tx=%s amount=%s to=%s", tx_hex, amount, to)
        return tx_hex

    async def close(self) -> None:
        if self._w3 is None:
            return
        provider = getattr(self._w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


def _key_hex(key: Any) -> str:
    if isinstance(key, (bytes, bytearray)):
        text = bytes(key).hex()
    else:
        text = str(key)
    return text if text.startswith("0x") else "0x" + text


def _receipt_status(receipt: Any) -> int:
    if receipt is None:
        return 0
    if isinstance(receipt, dict):
        status = receipt.get("status", 0)
    else:
        status = getattr(receipt, "status", 0)
    try:
        return int(status)
    except (TypeError, ValueError):
        return 0
