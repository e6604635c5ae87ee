from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Iterable, Protocol, Sequence

from account_pool.config import PoolConfig
from account_pool.errors import ConfigMissingError, PoolLoadError
from account_pool.funding import FundingDistributor, LedgerLike
from account_pool.models import (
    DEFAULT_PERSONALITY,
    PERSONALITIES,
    AccountRecord,
    Personality,
    PoolSummary,
    Signer,
)
from account_pool.tracker import CooldownTracker

LOGGER = logging.getLogger("account_pool.pool")


class RecordStore(Protocol):
    def load_records(self) -> list[AccountRecord]: ...

    def save_records(self, records: Iterable[AccountRecord]) -> None: ...


class KeyedLedger(LedgerLike, Protocol):
    def generate_keypair(self) -> tuple[str, str]: ...

    def derive_keypair(self, key_material: str) -> str: ...


def scaled_limits(pool_size: int) -> tuple[int, int]:
    """Return ``(concurrency, batch_size)`` sized for a pool."""
    concurrency = min(50, max(3, pool_size // 200 + 3))
    batch_size = min(20, max(2, pool_size // 300 + 2))
    return concurrency, batch_size


class AccountPoolManager:
    def __init__(
        self,
        config: PoolConfig,
        ledger: KeyedLedger,
        store: RecordStore,
        rng: random.Random | None = None,
        distributor: FundingDistributor | None = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.store = store
        self.rng = rng or random.Random()
        self.tracker = CooldownTracker(config, rng=self.rng)
        self.distributor = distributor or FundingDistributor(config, ledger, rng=self.rng)
        self.records: list[AccountRecord] = []
        self.public_ids: set[str] = set()
        self.active: list[AccountRecord] = []
        self.personalities: dict[str, Personality] = {}
        self.treasury: list[Signer] = []
        self.sink: Signer | None = None
        self.batch_size = config.batch_size
        self.concurrency = config.concurrency
        self.dirty = False

    def load_records(self) -> list[AccountRecord]:
        try:
            loaded = self.store.load_records()
        except Exception as exc:
            raise PoolLoadError(f"failed to load account records: {exc}") from exc

        self.records = self._normalize(loaded)
        self.public_ids = {record.public_id for record in self.records}
        self.dirty = self.records != list(loaded)
        LOGGER.info("Loaded %s existing accounts", f"{len(self.records):,}")
        return self.records

    async def load_or_generate(self) -> None:
        self.load_records()
        if len(self.records) < self.config.target_pool_size:
            await self._generate()
            self.dirty = True
        if self.dirty:
            self._save_records()

        self.load_special_accounts()
        if self.config.auto_scale:
            self.concurrency, self.batch_size = scaled_limits(len(self.records))
            LOGGER.info("Auto-scaled concurrency=%s batch_size=%s", self.concurrency, self.batch_size)

        await self.distributor.fund_all(self.records)

    def _normalize(self, loaded: Sequence[AccountRecord]) -> list[AccountRecord]:
        records: list[AccountRecord] = []
        seen: set[str] = set()
        for index, raw in enumerate(loaded):
            public_id = raw.public_id
            if not public_id:
                try:
                    public_id = self.ledger.derive_keypair(raw.key_material)
                except Exception as exc:
                    raise PoolLoadError(f"record {index} has unusable key material: {exc}") from exc
            if public_id in seen:
                LOGGER.warning("Dropping duplicate account record public_id=%s", public_id)
                continue
            seen.add(public_id)
            records.append(
                AccountRecord(
                    public_id=public_id,
                    key_material=raw.key_material,
                    display_name=raw.display_name or f"Account{index + 1}",
                    is_seasoned=bool(raw.is_seasoned),
                )
            )
        return records

    async def _generate(self) -> None:
        target = self.config.target_pool_size
        remaining = target - len(self.records)
        LOGGER.info("Generating %s accounts...", f"{remaining:,}")

        batch_size = self.config.generation_batch_size
        while len(self.records) < target:
            size = min(batch_size, target - len(self.records))
            for _ in range(size):
                public_id, key_material = self.ledger.generate_keypair()
                if public_id in self.public_ids:
                    continue
                self.public_ids.add(public_id)
                self.records.append(
                    AccountRecord(
                        public_id=public_id,
                        key_material=key_material,
                        display_name=f"Account{len(self.records) + 1}",
                    )
                )
            LOGGER.info("%s/%s", f"{len(self.records):,}", f"{target:,}")
            await asyncio.sleep(self.config.generation_pause_seconds)

    def _save_records(self) -> None:
        try:
            self.store.save_records(self.records)
        except Exception as exc:
            raise PoolLoadError(f"failed to save account records: {exc}") from exc
        self.dirty = False

    def load_special_accounts(self) -> None:
        try:
            self.sink = self._load_sink()
        except ConfigMissingError as exc:
            self.sink = None
            LOGGER.warning("%s. Withdrawals and stop-loss checks are disabled.", exc)

        try:
            self.treasury = self._load_treasury()
        except ConfigMissingError as exc:
            self.treasury = []
            LOGGER.warning("%s. Funding is disabled.", exc)
        self.distributor.treasury = list(self.treasury)

    def _load_sink(self) -> Signer:
        key = self.config.sink_private_key
        if not key:
            raise ConfigMissingError("No SINK_PRIVATE_KEY configured")
        try:
            signer = Signer(self.ledger.derive_keypair(key), key, "sink")
        except Exception as exc:
            raise ConfigMissingError(f"SINK_PRIVATE_KEY is not a usable key ({exc})") from exc
        LOGGER.info("Sink account loaded")
        return signer

    def _load_treasury(self) -> list[Signer]:
        keys = self.config.treasury_private_keys
        if not keys:
            raise ConfigMissingError("No TREASURY_PRIVATE_KEYS configured")
        try:
            signers = [
                Signer(self.ledger.derive_keypair(key), key, f"treasury{index + 1}") for index, key in enumerate(keys)
            ]
        except Exception as exc:
            raise ConfigMissingError(f"TREASURY_PRIVATE_KEYS contains an unusable key ({exc})") from exc
        LOGGER.info("Loaded %s treasury sources", len(signers))
        return signers

    def select_active_batch(self, now: float | None = None) -> list[AccountRecord]:
        now = time.time() if now is None else now
        self.tracker.cleanup(now)

        require_seasoning = self.config.require_seasoning
        eligible = [
            record
            for record in self.records
            if (not require_seasoning or record.is_seasoned) and self.tracker.is_ready(record.public_id, now)
        ]

        if not eligible:
            if require_seasoning:
                seasoned = sum(1 for record in self.records if record.is_seasoned)
                LOGGER.info(
                    "No accounts ready, unseasoned accounts need seasoning total=%s seasoned=%s unseasoned=%s",
                    len(self.records),
                    seasoned,
                    len(self.records) - seasoned,
                )
            else:
                LOGGER.debug("No accounts ready for a new batch")
            return []

        if self.config.shuffle_on_select:
            eligible = list(eligible)
            self.rng.shuffle(eligible)
        selected = eligible[: self.batch_size]
        self.active = selected
        LOGGER.info(
            "Selected batch: %s accounts (pool %s/%s) require_seasoning=%s",
            len(selected),
            len(eligible),
            len(self.records),
            require_seasoning,
        )
        return list(selected)

    def mark_used(self, public_id: str, now: float | None = None) -> None:
        self.tracker.mark_used(public_id, now)

    def mark_seasoned(self, public_ids: Iterable[str]) -> int:
        wanted = set(public_ids)
        changed = 0
        for record in self.records:
            if record.public_id in wanted and not record.is_seasoned:
                record.is_seasoned = True
                changed += 1
        if changed:
            self._save_records()
        return changed

    def assign_personalities(self) -> None:
        for public_id in self.public_ids:
            if public_id not in self.personalities:
                self.personalities[public_id] = self.rng.choice(PERSONALITIES)

    def reassign_personality(self, public_id: str) -> Personality:
        personality = self.rng.choice(PERSONALITIES)
        self.personalities[public_id] = personality
        return personality

    def get_personality(self, public_id: str) -> Personality:
        return self.personalities.get(public_id, DEFAULT_PERSONALITY)

    def summary(self, now: float | None = None) -> PoolSummary:
        now = time.time() if now is None else now
        seasoned = sum(1 for record in self.records if record.is_seasoned)
        return PoolSummary(
            total=len(self.records),
            seasoned=seasoned,
            unseasoned=len(self.records) - seasoned,
            funded=len(self.distributor.funded - self.distributor.failed),
            on_cooldown=self.tracker.on_cooldown_count(now),
            active=len(self.active),
            treasury_sources=len(self.treasury),
            has_sink=self.sink is not None,
        )
