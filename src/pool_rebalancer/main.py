"""Main entry point: async event loop and CLI for the pool rebalancer.

``run`` launches the concurrent services:
  1. Reconciliation worker (periodic sweep -> rebalance)
  2. Market-maker ticker (optional, own interval)
  3. Kill-switch monitor (re-reads EMERGENCY_STOP)

The other subcommands are one-shot admin / inspection tools against the same
database.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import structlog
import wandb

from pool_rebalancer.config import Settings
from pool_rebalancer.database import PoolStore
from pool_rebalancer.errors import PoolRebalancerError
from pool_rebalancer.gateway import build_gateway
from pool_rebalancer.market_maker import MarketMakerTicker
from pool_rebalancer.status import WorkerStatusReporter
from pool_rebalancer.worker import ReconciliationWorker

logger = structlog.get_logger()

KILL_SWITCH_POLL_SEC = 5.0


# ---------------------------------------------------------------------------
# Service tasks
# ---------------------------------------------------------------------------

async def _kill_switch_monitor(
    worker: ReconciliationWorker,
    ticker: Optional[MarketMakerTicker],
    shutdown_event: asyncio.Event,
) -> None:
    """Periodically re-read settings to detect EMERGENCY_STOP."""
    while not shutdown_event.is_set():
        try:
            live = Settings()
            if live.emergency_stop:
                logger.critical("emergency_stop_detected")
                await worker.stop()
                if ticker is not None:
                    await ticker.stop()
                shutdown_event.set()
                return
        except Exception as exc:
            logger.warning("kill_switch_settings_reload_failed", error=str(exc))

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=KILL_SWITCH_POLL_SEC)
            break
        except asyncio.TimeoutError:
            pass


# ---------------------------------------------------------------------------
# Structured logging setup
# ---------------------------------------------------------------------------

def _setup_logging(log_level: str) -> None:
    """Configure structlog with console rendering."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

async def run_service(settings: Settings) -> None:
    """Core async entry: initialize all services and run until shutdown."""
    log = structlog.get_logger()

    log.info(
        "service_starting",
        network=settings.network,
        dry_run=settings.dry_run,
        check_interval_sec=settings.check_interval_sec,
        mm_enabled=settings.mm_enabled,
    )

    if settings.emergency_stop:
        log.critical("emergency_stop_on_startup")
        return

    if settings.wandb_enabled:
        wandb.init(
            project=settings.wandb_project,
            entity=settings.wandb_entity or None,
            config=settings.model_dump(exclude={"wandb_api_key", "gateway_api_key"}),
        )
        log.info("wandb_initialized")

    shutdown_event = asyncio.Event()

    # --- Initialize database & gateway --------------------------------------
    store = PoolStore(settings.db_url)
    await store.init()
    gateway = build_gateway(settings)

    # --- Initialize services ------------------------------------------------
    worker = ReconciliationWorker(settings, store, gateway)
    ticker = MarketMakerTicker(settings, store, gateway) if settings.mm_enabled else None

    if settings.worker_autostart:
        await worker.start()
    if ticker is not None:
        await ticker.start()

    # --- Setup signal handlers for graceful shutdown ------------------------
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)
    else:
        try:
            signal.signal(signal.SIGTERM, lambda *_: loop.call_soon_threadsafe(shutdown_event.set))
        except (AttributeError, ValueError):
            pass

    log.info("all_services_initialized")

    try:
        await asyncio.gather(
            _kill_switch_monitor(worker, ticker, shutdown_event),
            shutdown_event.wait(),
        )
    except asyncio.CancelledError:
        log.info("tasks_cancelled")
    finally:
        shutdown_event.set()
        await worker.stop()
        await worker.wait_closed()
        if ticker is not None:
            await ticker.stop()
            await ticker.wait_closed()
        await gateway.close()
        await store.close()
        if settings.wandb_enabled:
            wandb.finish()
        log.info("service_stopped")


# ---------------------------------------------------------------------------
# One-shot commands
# ---------------------------------------------------------------------------

async def _cmd_status(settings: Settings) -> int:
    store = PoolStore(settings.db_url)
    await store.init()
    try:
        status = await WorkerStatusReporter(store).snapshot()
    finally:
        await store.close()
    print(status.model_dump_json(indent=2))
    return 0


async def _cmd_rebalance(settings: Settings, pool_id: int) -> int:
    store = PoolStore(settings.db_url)
    await store.init()
    gateway = build_gateway(settings)
    try:
        worker = ReconciliationWorker(settings, store, gateway)
        outcome = await worker.rebalance_pool_now(pool_id)
    finally:
        await gateway.close()
        await store.close()

    line = f"pool {outcome.pool_id}: {outcome.status.value}"
    if outcome.action is not None:
        line += f" ({outcome.action.describe()})"
    if outcome.signature:
        line += f" tx={outcome.signature}"
    if outcome.error:
        line += f" error={outcome.error}"
    print(line)
    return 0 if outcome.error is None else 1


async def _cmd_history(settings: Settings, limit: int, pool_id: Optional[int]) -> int:
    store = PoolStore(settings.db_url)
    await store.init()
    try:
        records = await store.recent_transactions(limit=limit, pool_id=pool_id)
    finally:
        await store.close()

    if not records:
        print("no rebalance transactions")
        return 0
    for rec in records:
        created = rec.created_at.isoformat() if rec.created_at else "-"
        print(
            f"{created}  pool={rec.pool_id}  {rec.direction:<4}  amount={rec.amount}  "
            f"price={rec.price}  {rec.status:<7}  {rec.tx_signature or rec.error_message or ''}"
        )
    return 0


async def _cmd_register_pool(settings: Settings, args: argparse.Namespace) -> int:
    store = PoolStore(settings.db_url)
    await store.init()
    try:
        pool = await store.register_pool(
            pool_address=args.pool_address,
            token_a_symbol=args.token_a,
            token_b_symbol=args.token_b,
            token_a_address=args.token_a_mint,
            token_b_address=args.token_b_mint,
            target_ratio=settings.default_target_ratio,
            rebalance_threshold=settings.default_rebalance_threshold,
            min_trade_size=settings.default_min_trade_size,
            max_trade_size=settings.default_max_trade_size,
            max_slippage=settings.default_max_slippage,
            enabled=args.enable,
        )
    finally:
        await store.close()
    print(f"registered pool {pool.pool_id} {pool.pair_name} enabled={pool.enabled}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pool-rebalancer",
        description="Keep managed AMM pools near their target token ratio",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the reconciliation worker (default)")
    sub.add_parser("status", help="Print worker / pool status counters")

    rebalance = sub.add_parser("rebalance", help="Run one rebalance for a pool now")
    rebalance.add_argument("pool_id", type=int)

    history = sub.add_parser("history", help="List recent rebalance transactions")
    history.add_argument("--limit", type=int, default=10, help="Rows to show (default: 10)")
    history.add_argument("--pool", type=int, default=None, help="Only this pool id")

    register = sub.add_parser("register-pool", help="Register a pool with default strategy params")
    register.add_argument("pool_address", type=str)
    register.add_argument("--token-a", type=str, default="", help="Token A symbol")
    register.add_argument("--token-b", type=str, default="", help="Token B symbol")
    register.add_argument("--token-a-mint", type=str, default="", help="Token A mint address")
    register.add_argument("--token-b-mint", type=str, default="", help="Token B mint address")
    register.add_argument("--enable", action="store_true", help="Enable rebalancing immediately")
    return parser


async def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    command = args.command or "run"
    if command == "run":
        await run_service(settings)
        return 0
    if command == "status":
        return await _cmd_status(settings)
    if command == "rebalance":
        return await _cmd_rebalance(settings, args.pool_id)
    if command == "history":
        return await _cmd_history(settings, args.limit, args.pool)
    if command == "register-pool":
        return await _cmd_register_pool(settings, args)
    raise ValueError(f"unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> None:
    """Synchronous wrapper for ``asyncio.run``."""
    args = build_parser().parse_args(argv)
    settings = Settings()
    _setup_logging(settings.log_level)

    try:
        code = asyncio.run(_dispatch(args, settings))
    except KeyboardInterrupt:
        code = 0
    except PoolRebalancerError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
