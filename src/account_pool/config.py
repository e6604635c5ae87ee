from __future__ import annotations

from dataclasses import dataclass
import os


TRUTHY = {"1", "true", "yes", "y", "on"}
FALSY = {"0", "false", "no", "n", "off"}

WEI_PER_ETHER = 10**18


@dataclass(frozen=True)
class PoolConfig:
    ledger_rpc_url: str
    ledger_chain_id: int
    database_path: str

    target_pool_size: int
    generation_batch_size: int
    generation_pause_seconds: float

    fund_amount: int
    min_buffer_amount: int
    priority_fee: int
    funding_batch_size: int
    funding_delay_min_seconds: float
    funding_delay_max_seconds: float

    cooldown_min_seconds: float
    cooldown_max_seconds: float
    max_cooldown_age_seconds: float
    require_seasoning: bool
    shuffle_on_select: bool
    auto_scale: bool
    batch_size: int
    concurrency: int
    trade_count_cap_every: int
    deep_cleanup_every: int

    enable_circuit_breaker: bool
    max_consecutive_failures: int
    failure_rate_window: int
    max_failure_rate: float
    emergency_stop_loss: float
    balance_check_interval: int

    treasury_private_keys: tuple[str, ...]
    sink_private_key: str

    log_level: str

    @property
    def funding_threshold(self) -> int:
        # Accounts at or above 80% of the target are treated as funded.
        return self.fund_amount * 8 // 10


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if raw in TRUTHY:
        return True
    if raw in FALSY:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def parse_key_list(raw: str) -> tuple[str, ...]:
    keys = []
    for part in raw.replace("\n", ",").split(","):
        key = part.strip()
        if key:
            keys.append(key)
    return tuple(keys)


def load_config() -> PoolConfig:
    cooldown_min = max(0.0, _env_float("COOLDOWN_MIN_SECONDS", 30.0))
    cooldown_max = max(cooldown_min, _env_float("COOLDOWN_MAX_SECONDS", 120.0))
    delay_min = max(0.0, _env_float("FUNDING_DELAY_MIN_SECONDS", 1.0))
    delay_max = max(delay_min, _env_float("FUNDING_DELAY_MAX_SECONDS", 3.0))

    return PoolConfig(
        ledger_rpc_url=os.getenv("LEDGER_RPC_URL", "http://127.0.0.1:8545"),
        ledger_chain_id=_env_int("LEDGER_CHAIN_ID", 1),
        database_path=os.getenv("POOL_DB_PATH", "data/pool.db"),
        target_pool_size=max(0, _env_int("POOL_TARGET_SIZE", 100)),
        generation_batch_size=max(1, _env_int("GENERATION_BATCH_SIZE", 1000)),
        generation_pause_seconds=0.01,
        fund_amount=max(0, _env_int("FUND_AMOUNT_WEI", WEI_PER_ETHER // 100)),
        min_buffer_amount=max(1, _env_int("MIN_BUFFER_WEI", WEI_PER_ETHER // 10_000)),
        priority_fee=max(0, _env_int("PRIORITY_FEE_WEI", 1_000_000_000)),
        funding_batch_size=max(1, _env_int("FUNDING_BATCH_SIZE", 50)),
        funding_delay_min_seconds=delay_min,
        funding_delay_max_seconds=delay_max,
        cooldown_min_seconds=cooldown_min,
        cooldown_max_seconds=cooldown_max,
        max_cooldown_age_seconds=_env_float("MAX_COOLDOWN_AGE_SECONDS", 3600.0),
        require_seasoning=_env_bool("REQUIRE_SEASONING", False),
        shuffle_on_select=_env_bool("SHUFFLE_ON_SELECT", True),
        auto_scale=_env_bool("AUTO_SCALE", True),
        batch_size=max(1, _env_int("BATCH_SIZE", 5)),
        concurrency=max(1, _env_int("CONCURRENCY", 3)),
        trade_count_cap_every=max(1, _env_int("TRADE_COUNT_CAP_EVERY", 100)),
        deep_cleanup_every=max(1, _env_int("DEEP_CLEANUP_EVERY", 1000)),
        enable_circuit_breaker=_env_bool("ENABLE_CIRCUIT_BREAKER", True),
        max_consecutive_failures=max(1, _env_int("MAX_CONSECUTIVE_FAILURES", 10)),
        failure_rate_window=max(1, _env_int("FAILURE_RATE_WINDOW", 50)),
        max_failure_rate=_env_float("MAX_FAILURE_RATE", 0.5),
        emergency_stop_loss=_env_float("EMERGENCY_STOP_LOSS", 0.2),
        balance_check_interval=max(1, _env_int("BALANCE_CHECK_INTERVAL", 10)),
        treasury_private_keys=parse_key_list(os.getenv("TREASURY_PRIVATE_KEYS", "")),
        sink_private_key=os.getenv("SINK_PRIVATE_KEY", "").strip(),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
