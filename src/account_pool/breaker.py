from __future__ import annotations

from collections import deque
import logging
from typing import Any, Protocol

from account_pool.config import PoolConfig
from account_pool.errors import NetworkQueryError
from account_pool.models import BreakerDecision, Signer

LOGGER = logging.getLogger("account_pool.breaker")

ARMED = BreakerDecision(False, "")


class BalanceSource(Protocol):
    async def get_balance(self, public_id: str) -> int: ...


class EventSink(Protocol):
    def record_breaker_event(self, kind: str, details: dict[str, Any]) -> None: ...


class CircuitBreaker:
    """Trips on consecutive failures, a high failure rate, or sink balance loss.

    Once tripped it stays tripped until :meth:`reset` is called.
    """

    def __init__(self, config: PoolConfig, events: EventSink | None = None) -> None:
        self.config = config
        self.events = events
        self.consecutive_failures = 0
        self.recent_outcomes: deque[bool] = deque(maxlen=max(1, config.failure_rate_window))
        self.initial_sink_balance = 0
        self.check_counter = 0
        self._tripped = False
        self._reason = ""

    @property
    def enabled(self) -> bool:
        return self.config.enable_circuit_breaker

    @property
    def tripped(self) -> bool:
        return self._tripped

    @property
    def reason(self) -> str:
        return self._reason

    def record_outcome(self, success: bool) -> None:
        if not self.enabled:
            return
        self.recent_outcomes.append(bool(success))
        if success:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

    async def capture_initial_balance(self, ledger: BalanceSource, sink: Signer | None) -> int:
        if not self.enabled or sink is None:
            return 0
        try:
            self.initial_sink_balance = int(await ledger.get_balance(sink.public_id))
        except NetworkQueryError as exc:
            LOGGER.warning("Sink starting balance unavailable, stop-loss disabled: %s", exc)
            return 0
        LOGGER.info("Sink starting balance=%s wei", self.initial_sink_balance)
        return self.initial_sink_balance

    async def evaluate(self, ledger: BalanceSource, sink: Signer | None) -> BreakerDecision:
        if not self.enabled:
            return ARMED
        if self._tripped:
            return BreakerDecision(True, self._reason)

        for decision in (self._check_consecutive_failures(), self._check_failure_rate()):
            if decision.tripped:
                return self._trip(decision)
        decision = await self._check_stop_loss(ledger, sink)
        if decision.tripped:
            return self._trip(decision)
        return ARMED

    def _check_consecutive_failures(self) -> BreakerDecision:
        if self.consecutive_failures >= self.config.max_consecutive_failures:
            return BreakerDecision(True, f"Circuit Breaker: {self.consecutive_failures} consecutive failures")
        return ARMED

    def _check_failure_rate(self) -> BreakerDecision:
        window = self.config.failure_rate_window
        if len(self.recent_outcomes) < window:
            return ARMED
        failures = sum(1 for outcome in self.recent_outcomes if not outcome)
        rate = failures / len(self.recent_outcomes)
        if rate > self.config.max_failure_rate:
            return BreakerDecision(True, f"Circuit Breaker: {rate * 100:.1f}% failure rate (last {window} trades)")
        return ARMED

    async def _check_stop_loss(self, ledger: BalanceSource, sink: Signer | None) -> BreakerDecision:
        self.check_counter += 1
        if sink is None or self.initial_sink_balance <= 0:
            return ARMED
        if self.check_counter % self.config.balance_check_interval != 0:
            return ARMED

        try:
            current = int(await ledger.get_balance(sink.public_id))
        except NetworkQueryError as exc:
            LOGGER.warning("Sink balance check skipped check=%s error=%s", self.check_counter, exc)
            return ARMED
        loss = (self.initial_sink_balance - current) / self.initial_sink_balance
        if loss > self.config.emergency_stop_loss:
            return BreakerDecision(True, f"Circuit Breaker: {loss * 100:.1f}% loss from initial balance")
        return ARMED

    def _trip(self, decision: BreakerDecision) -> BreakerDecision:
        self._tripped = True
        self._reason = decision.reason
        LOGGER.error(
            "%s consecutive_failures=%s window=%s",
            decision.reason,
            self.consecutive_failures,
            len(self.recent_outcomes),
        )
        if self.events is not None:
            self.events.record_breaker_event(
                "tripped",
                {
                    "reason": decision.reason,
                    "consecutive_failures": self.consecutive_failures,
                    "recent_failures": sum(1 for outcome in self.recent_outcomes if not outcome),
                    "window": len(self.recent_outcomes),
                    "initial_sink_balance": self.initial_sink_balance,
                },
            )
        return decision

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.recent_outcomes.clear()
        self.check_counter = 0
        self._tripped = False
        self._reason = ""
        LOGGER.info("Circuit breaker re-armed")
