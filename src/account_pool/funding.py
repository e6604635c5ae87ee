from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Protocol, Sequence

from account_pool.config import PoolConfig
from account_pool.errors import ConfigMissingError, FundingError
from account_pool.models import AccountRecord, Signer

LOGGER = logging.getLogger("account_pool.funding")

MAX_SPLIT_PARTS = 4


class LedgerLike(Protocol):
    async def get_balance(self, public_id: str) -> int: ...

    async def submit_transfer(self, source: Signer, to: str, amount: int, priority_fee: int) -> str: ...


class FundingDistributor:
    """Tops pool accounts up to the configured amount from treasury sources.

    Every account is claimed in ``funded`` before any network work starts, so
    duplicate calls for one account in the same run do nothing. A failed
    attempt keeps its claim and is not retried until a new distributor is
    created.
    """

    def __init__(
        self,
        config: PoolConfig,
        ledger: LedgerLike,
        treasury: Sequence[Signer] = (),
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.treasury = list(treasury)
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.funded: set[str] = set()
        self.failed: set[str] = set()
        self._sweeping = False

    def split_shortfall(self, shortfall: int) -> list[int]:
        """Break a shortfall into 1-4 randomly sized transfers, each at least the buffer."""
        floor = self.config.min_buffer_amount
        parts = self.rng.randint(1, MAX_SPLIT_PARTS)
        remaining = int(shortfall)
        amounts: list[int] = []
        for index in range(parts):
            if remaining <= floor:
                break
            parts_left = parts - index
            factor = int(self.rng.uniform(0.6, 1.4) * 1000)
            base = remaining * factor // 1000 // parts_left
            amount = min(max(base, floor), remaining)
            amounts.append(amount)
            remaining -= amount
        return amounts

    async def fund_all(self, records: Sequence[AccountRecord]) -> None:
        if not self.treasury:
            LOGGER.info("No treasury sources configured, skipping funding")
            return

        pending = [record for record in records if record.public_id not in self.funded]
        LOGGER.info("Checking funding for %s accounts (%s pending)", len(records), len(pending))
        batch_size = self.config.funding_batch_size
        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            results = await asyncio.gather(
                *(self.fund_one(record) for record in batch),
                return_exceptions=True,
            )
            for record, result in zip(batch, results):
                if isinstance(result, FundingError):
                    LOGGER.warning("Failed to fund %s: %s", record.display_name, result)
                elif isinstance(result, BaseException):
                    LOGGER.error("Unexpected funding error for %s: %r", record.display_name, result)
            LOGGER.info("Funding progress: %s/%s", min(start + batch_size, len(pending)), len(pending))

    async def fund_one(self, record: AccountRecord) -> int:
        """Fund one account; returns the amount transferred (0 if nothing was needed)."""
        if not self.treasury:
            raise ConfigMissingError("no treasury sources configured")
        if record.public_id in self.funded:
            return 0
        self.funded.add(record.public_id)

        sent = 0
        try:
            balance = await self.ledger.get_balance(record.public_id)
            if balance >= self.config.funding_threshold:
                return 0

            for amount in self.split_shortfall(self.config.fund_amount - balance):
                source = self.rng.choice(self.treasury)
                await self.ledger.submit_transfer(source, record.public_id, amount, self.config.priority_fee)
                sent += amount
                LOGGER.info("Funded %s: %s wei from %s", record.display_name, amount, source.label or source.public_id)
                await self.sleep(
                    self.rng.uniform(self.config.funding_delay_min_seconds, self.config.funding_delay_max_seconds)
                )
        except Exception as exc:
            self.failed.add(record.public_id)
            raise FundingError(record.public_id, f"funding abandoned after {sent} wei: {exc}") from exc
        return sent

    async def sweep_to_sink(self, records: Sequence[AccountRecord], sink: Signer | None) -> int:
        """Move every pool balance, less the fee reserve, back to the sink account."""
        if sink is None:
            raise ConfigMissingError("no sink account configured, withdrawals are not possible")
        if self._sweeping:
            LOGGER.warning("Withdrawal already in progress")
            return 0

        self._sweeping = True
        total = 0
        try:
            for record in records:
                try:
                    balance = await self.ledger.get_balance(record.public_id)
                    amount = balance - self.config.min_buffer_amount
                    if amount <= 0:
                        continue
                    signer = Signer(record.public_id, record.key_material, record.display_name)
                    await self.ledger.submit_transfer(signer, sink.public_id, amount, self.config.priority_fee)
                    total += amount
                    LOGGER.info("Withdrew %s wei from %s", amount, record.display_name)
                except Exception as exc:
                    LOGGER.warning("Failed to withdraw from %s: %s", record.display_name, exc)
        finally:
            self._sweeping = False
        LOGGER.info("Withdrawal complete total=%s wei accounts=%s", total, len(records))
        return total
