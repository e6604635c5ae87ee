from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict, replace
import json
import logging
from typing import Iterable

from account_pool.breaker import CircuitBreaker
from account_pool.config import PoolConfig, load_config
from account_pool.errors import ConfigMissingError, PoolLoadError
from account_pool.ledger import LedgerClient
from account_pool.pool import AccountPoolManager
from account_pool.storage import Storage

LOGGER = logging.getLogger("account_pool")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("web3", "urllib3", "aiohttp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _build_pool(config: PoolConfig, storage: Storage) -> tuple[AccountPoolManager, LedgerClient]:
    ledger = LedgerClient(config)
    return AccountPoolManager(config, ledger, storage), ledger


async def _init_pool(config: PoolConfig, storage: Storage) -> dict[str, object]:
    pool, ledger = _build_pool(config, storage)
    try:
        await pool.load_or_generate()
        pool.assign_personalities()
        breaker = CircuitBreaker(config, events=storage)
        await breaker.capture_initial_balance(ledger, pool.sink)
        summary = asdict(pool.summary())
        summary["concurrency"] = pool.concurrency
        summary["batch_size"] = pool.batch_size
        summary["initial_sink_balance"] = breaker.initial_sink_balance
        return summary
    finally:
        await ledger.close()


async def _withdraw(config: PoolConfig, storage: Storage) -> int:
    pool, ledger = _build_pool(config, storage)
    try:
        pool.load_records()
        pool.load_special_accounts()
        return await pool.distributor.sweep_to_sink(pool.records, pool.sink)
    finally:
        await ledger.close()


def _init_command(args: argparse.Namespace) -> int:
    config = load_config()
    if args.target is not None:
        config = replace(config, target_pool_size=max(0, int(args.target)))
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        summary = asyncio.run(_init_pool(config, storage))
    except PoolLoadError as exc:
        LOGGER.error("Pool initialization failed: %s", exc)
        return 1
    finally:
        storage.close()
    print(json.dumps(summary, indent=2))
    return 0


def _status_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        payload = {
            "accounts": storage.account_counts(),
            "breaker_events": storage.breaker_events(limit=args.events),
        }
    finally:
        storage.close()
    print(json.dumps(payload, indent=2, default=str))
    return 0


def _withdraw_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        total = asyncio.run(_withdraw(config, storage))
    except (ConfigMissingError, PoolLoadError) as exc:
        LOGGER.error("Withdrawal failed: %s", exc)
        return 1
    finally:
        storage.close()
    print(json.dumps({"withdrawn_wei": total}))
    return 0


def _season_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        updated = storage.mark_seasoned(args.ids, seasoned=not args.unset)
    finally:
        storage.close()
    LOGGER.info("Updated seasoning for %s accounts", updated)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="account_pool", description="Account pool and safety controller")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Load or generate the pool and fund it")
    init.add_argument("--target", type=int, default=None, help="Override the target pool size")
    init.set_defaults(func=_init_command)

    status = sub.add_parser("status", help="Print stored pool counts and recent breaker trips")
    status.add_argument("--events", type=int, default=10, help="Number of breaker events to show")
    status.set_defaults(func=_status_command)

    withdraw = sub.add_parser("withdraw", help="Sweep pool balances back to the sink account")
    withdraw.set_defaults(func=_withdraw_command)

    season = sub.add_parser("season", help="Set the seasoned flag on accounts")
    season.add_argument("ids", nargs="+", help="Account addresses")
    season.add_argument("--unset", action="store_true", help="Clear the flag instead of setting it")
    season.set_defaults(func=_season_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
