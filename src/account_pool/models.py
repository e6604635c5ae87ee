from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Personality(str, Enum):
    FLIPPER = "flipper"
    HOLDER = "holder"
    SCALPER = "scalper"
    SWINGER = "swinger"


PERSONALITIES: tuple[Personality, ...] = tuple(Personality)
DEFAULT_PERSONALITY = Personality.FLIPPER


@dataclass
class AccountRecord:
    public_id: str
    key_material: str = field(repr=False)
    display_name: str = "Account"
    is_seasoned: bool = False


@dataclass(frozen=True)
class Signer:
    """A treasury or sink account: address plus the key that signs for it."""

    public_id: str
    key_material: str
    label: str = ""

    def __repr__(self) -> str:
        return f"Signer(public_id={self.public_id!r}, label={self.label!r})"


@dataclass(frozen=True)
class BreakerDecision:
    tripped: bool
    reason: str = ""


@dataclass
class PoolSummary:
    total: int
    seasoned: int
    unseasoned: int
    funded: int
    on_cooldown: int
    active: int
    treasury_sources: int
    has_sink: bool
