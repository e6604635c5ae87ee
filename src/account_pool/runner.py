from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from account_pool.breaker import BalanceSource, CircuitBreaker
from account_pool.models import AccountRecord, Personality
from account_pool.pool import AccountPoolManager

LOGGER = logging.getLogger("account_pool.runner")

TradeFn = Callable[[AccountRecord, Personality], Awaitable[bool]]


class Runner:
    """Drives the pool one cycle at a time with an external trade callable.

    The trade callable returns ``True`` on success; a ``False`` result or an
    exception counts as a failed outcome for the circuit breaker.
    """

    def __init__(
        self,
        pool: AccountPoolManager,
        breaker: CircuitBreaker,
        ledger: BalanceSource,
        trade: TradeFn,
        idle_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.pool = pool
        self.breaker = breaker
        self.ledger = ledger
        self.trade = trade
        self.idle_seconds = idle_seconds
        self.sleep = sleep
        self.cycles = 0
        self._running = False
        self._stopped = asyncio.Event()
        self._stopped.set()

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, max_cycles: int | None = None) -> str:
        """Run until stopped, tripped, or ``max_cycles``; returns the stop reason."""
        self._running = True
        self._stopped.clear()
        reason = "stopped"
        try:
            while self._running:
                if max_cycles is not None and self.cycles >= max_cycles:
                    reason = "max cycles reached"
                    break
                decision = await self.run_cycle()
                if decision:
                    reason = decision
                    break
        finally:
            self._running = False
            self._stopped.set()
        LOGGER.info("Runner finished cycles=%s reason=%s", self.cycles, reason)
        return reason

    async def run_cycle(self) -> str:
        """Run one cycle; returns the breaker reason if it tripped, else an empty string."""
        self.cycles += 1
        batch = self.pool.select_active_batch()
        if not batch:
            await self.sleep(self.idle_seconds)
            return ""

        semaphore = asyncio.Semaphore(max(1, self.pool.concurrency))

        async def _one(record: AccountRecord) -> bool:
            async with semaphore:
                try:
                    return bool(await self.trade(record, self.pool.get_personality(record.public_id)))
                except Exception as exc:
                    LOGGER.warning("Trade failed account=%s error=%s", record.display_name, exc)
                    return False
                finally:
                    self.pool.mark_used(record.public_id)

        outcomes = await asyncio.gather(*(_one(record) for record in batch))
        for outcome in outcomes:
            self.breaker.record_outcome(outcome)

        decision = await self.breaker.evaluate(self.ledger, self.pool.sink)
        if decision.tripped:
            LOGGER.error("Stopping after circuit breaker trip: %s", decision.reason)
            return decision.reason
        return ""

    async def stop(self) -> None:
        self._running = False
        if not self._stopped.is_set():
            await self._stopped.wait()

    async def shutdown(self, timeout: float = 5.0) -> bool:
        """Ask the loop to stop, waiting at most ``timeout`` seconds. Returns True if it stopped."""
        try:
            await asyncio.wait_for(self.stop(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            LOGGER.warning("Runner did not stop within %.1fs, continuing shutdown", timeout)
            return False
