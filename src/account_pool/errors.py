from __future__ import annotations


class PoolError(Exception):
    """Base class for account pool failures."""


class PoolLoadError(PoolError):
    """The persisted pool could not be loaded or saved; initialization stops."""


class FundingError(PoolError):
    def __init__(self, public_id: str, message: str) -> None:
        super().__init__(f"{public_id}: {message}")
        self.public_id = public_id


class NetworkQueryError(PoolError):
    """A ledger RPC call failed."""


class ConfigMissingError(PoolError):
    """A feature's configuration is absent; the feature is disabled."""
