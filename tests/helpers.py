from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
import random
import sys
from typing import Iterable
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from account_pool.config import load_config  # noqa: E402
from account_pool.errors import NetworkQueryError  # noqa: E402
from account_pool.models import AccountRecord, Signer  # noqa: E402


def test_config(**kwargs):
    with patch.dict("os.environ", {}, clear=True):
        cfg = load_config()
    defaults = dict(
        target_pool_size=10,
        fund_amount=1000,
        min_buffer_amount=10,
        priority_fee=1,
        funding_batch_size=50,
        cooldown_min_seconds=1.0,
        cooldown_max_seconds=1.0,
        max_cooldown_age_seconds=3600.0,
        shuffle_on_select=False,
        auto_scale=False,
        batch_size=5,
        generation_pause_seconds=0.0,
    )
    defaults.update(kwargs)
    return replace(cfg, **defaults)


test_config.__test__ = False  # type: ignore[attr-defined]


class ScriptedRandom(random.Random):
    """Seeded random source that returns queued values for ``uniform``/``randint`` first."""

    def __init__(self, uniform: Iterable[float] = (), randint: Iterable[int] = (), seed: int = 7) -> None:
        super().__init__(seed)
        self.uniform_values = list(uniform)
        self.randint_values = list(randint)

    def uniform(self, a, b):
        if self.uniform_values:
            return self.uniform_values.pop(0)
        return super().uniform(a, b)

    def randint(self, a, b):
        if self.randint_values:
            return self.randint_values.pop(0)
        return super().randint(a, b)


class FakeLedger:
    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self.balances: dict[str, int] = dict(balances or {})
        self.balance_calls: list[str] = []
        self.transfers: list[tuple[str, str, int]] = []
        self.fail_balance: set[str] = set()
        self.fail_transfer_to: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = 0

    def generate_keypair(self) -> tuple[str, str]:
        self._counter += 1
        key = f"key{self._counter}"
        return self.derive_keypair(key), key

    @staticmethod
    def derive_keypair(key_material: str) -> str:
        return f"pub-{key_material}"

    async def get_balance(self, public_id: str) -> int:
        self.balance_calls.append(public_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if public_id in self.fail_balance:
                raise NetworkQueryError(f"balance unavailable for {public_id}")
            return self.balances.get(public_id, 0)
        finally:
            self.in_flight -= 1

    async def submit_transfer(self, source: Signer, to: str, amount: int, priority_fee: int) -> str:
        await asyncio.sleep(0)
        if to in self.fail_transfer_to:
            raise NetworkQueryError(f"transfer to {to} rejected")
        self.transfers.append((source.public_id, to, amount))
        self.balances[source.public_id] = self.balances.get(source.public_id, 0) - amount
        self.balances[to] = self.balances.get(to, 0) + amount
        return f"0xtx{len(self.transfers)}"


class FakeStore:
    def __init__(self, records: Iterable[AccountRecord] = (), fail_load: bool = False, fail_save: bool = False) -> None:
        self.records = list(records)
        self.fail_load = fail_load
        self.fail_save = fail_save
        self.saves: list[list[AccountRecord]] = []

    def load_records(self) -> list[AccountRecord]:
        if self.fail_load:
            raise OSError("store unavailable")
        return [replace(record) for record in self.records]

    def save_records(self, records: Iterable[AccountRecord]) -> None:
        if self.fail_save:
            raise OSError("disk full")
        saved = [replace(record) for record in records]
        self.saves.append(saved)
        self.records = saved


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def build_records(count: int, seasoned: bool = False) -> list[AccountRecord]:
    return [
        AccountRecord(public_id=f"pub-acct{i}", key_material=f"acct{i}", display_name=f"Account{i + 1}", is_seasoned=seasoned)
        for i in range(count)
    ]


def treasury(count: int = 2) -> list[Signer]:
    return [Signer(f"pub-treasury{i}", f"treasury{i}", f"treasury{i + 1}") for i in range(count)]
