from __future__ import annotations

import logging
import random
import time

from account_pool.config import PoolConfig

LOGGER = logging.getLogger("account_pool.tracker")

TRADE_COUNT_CAP = 1000
INACTIVE_THRESHOLD_SECONDS = 7 * 24 * 60 * 60
DEEP_CLEANUP_MIN_ENTRIES = 100


class MaintenanceSchedule:
    """Fires on every ``every``-th call to :meth:`due`."""

    def __init__(self, every: int) -> None:
        self.every = max(1, int(every))
        self.calls = 0

    def due(self) -> bool:
        self.calls += 1
        return self.calls % self.every == 0


class CooldownTracker:
    def __init__(self, config: PoolConfig, rng: random.Random | None = None) -> None:
        self.config = config
        self.rng = rng or random.Random()
        self.last_used: dict[str, float] = {}
        self.trade_counts: dict[str, int] = {}
        self.cap_schedule = MaintenanceSchedule(config.trade_count_cap_every)
        self.deep_schedule = MaintenanceSchedule(config.deep_cleanup_every)

    def mark_used(self, public_id: str, now: float | None = None) -> None:
        self.last_used[public_id] = time.time() if now is None else now
        self.trade_counts[public_id] = self.trade_counts.get(public_id, 0) + 1

    def trade_count(self, public_id: str) -> int:
        return self.trade_counts.get(public_id, 0)

    def cooldown_for(self, public_id: str) -> float:
        multiplier = 1 + (self.trade_count(public_id) % 5) * 0.2
        base = self.rng.uniform(self.config.cooldown_min_seconds, self.config.cooldown_max_seconds)
        return base * multiplier

    def is_ready(self, public_id: str, now: float) -> bool:
        last = self.last_used.get(public_id)
        if last is None:
            return True
        return now - last >= self.cooldown_for(public_id)

    def on_cooldown_count(self, now: float) -> int:
        return sum(1 for public_id in self.last_used if not self.is_ready(public_id, now))

    def cleanup(self, now: float) -> None:
        max_age = self.config.max_cooldown_age_seconds
        expired = [key for key, ts in self.last_used.items() if now - ts > max_age]
        for key in expired:
            del self.last_used[key]

        if self.cap_schedule.due():
            self._cap_trade_counts()
        if self.deep_schedule.due():
            self._purge_inactive(now)

    def _cap_trade_counts(self) -> None:
        capped = 0
        for key, count in self.trade_counts.items():
            if count > TRADE_COUNT_CAP:
                self.trade_counts[key] = TRADE_COUNT_CAP
                capped += 1
        if capped > 10:
            LOGGER.debug("trade_counts_capped accounts=%s tracked=%s", capped, len(self.trade_counts))

    def _purge_inactive(self, now: float) -> None:
        inactive = [key for key, ts in self.last_used.items() if now - ts > INACTIVE_THRESHOLD_SECONDS]
        # Counts whose timestamp was already aged out have no activity left to measure.
        inactive.extend(key for key in self.trade_counts if key not in self.last_used)
        # Only worth purging when many accounts have gone quiet.
        if len(inactive) <= DEEP_CLEANUP_MIN_ENTRIES:
            return
        for key in inactive:
            self.last_used.pop(key, None)
            self.trade_counts.pop(key, None)
        LOGGER.info("deep_cleanup removed=%s remaining=%s", len(inactive), len(self.trade_counts))
