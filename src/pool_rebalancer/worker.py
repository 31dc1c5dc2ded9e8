"""Reconciliation Worker: periodic sweep that keeps pools near their target ratio.

One sweep:
  - list eligible pools (active, enabled, not emergency-stopped)
  - per pool: fetch on-chain state -> snapshot -> decide -> execute -> record
  - per-pool failures become ERROR events and never stop the sweep

The worker is a plain service object: ``main`` builds one and hands it to
whatever needs control or status. Sweeps never overlap; the loop waits
``check_interval_sec`` on a stop event between the end of one sweep and the
start of the next.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

import structlog
import wandb

from pool_rebalancer.config import Settings
from pool_rebalancer.database import PoolStore
from pool_rebalancer.decider import current_ratio, decide, needs_rebalance
from pool_rebalancer.errors import PoolNotEligibleError, PoolStateUnavailableError
from pool_rebalancer.executor import RebalanceExecutor
from pool_rebalancer.gateway import AmmGateway
from pool_rebalancer.models import (
    EventType,
    PoolConfig,
    PoolOnchainState,
    RebalanceAction,
    TransactionStatus,
)

logger = structlog.get_logger()


class OutcomeStatus(str, Enum):
    NO_ACTION = "NO_ACTION"
    REBALANCED = "REBALANCED"
    FAILED = "FAILED"  # executor ran and reported failure
    ERROR = "ERROR"  # fetch / decide / store raised


@dataclass(frozen=True)
class PoolOutcome:
    pool_id: int
    status: OutcomeStatus
    action: Optional[RebalanceAction] = None
    signature: str = ""
    error: Optional[str] = None


class ReconciliationWorker:
    """Periodic rebalance sweep over all eligible pools."""

    def __init__(
        self,
        settings: Settings,
        store: PoolStore,
        gateway: AmmGateway,
        executor: Optional[RebalanceExecutor] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._gateway = gateway
        self._executor = executor or RebalanceExecutor(
            gateway, timeout=settings.execution_timeout_sec
        )

        self._stop_event = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task[None]] = None
        self._last_check_time: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Idle -> Running. Sweeps immediately, then every ``check_interval_sec``."""
        if self._running:
            logger.debug("reconciliation_worker_already_running")
            return
        self._running = True
        # A loop stopped mid-sweep must finish before the stop event is reused.
        await self.wait_closed()
        if not self._running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="reconciliation-worker")
        logger.info(
            "reconciliation_worker_started",
            interval_sec=self._settings.check_interval_sec,
            concurrency=self._settings.sweep_concurrency,
        )

    async def stop(self) -> None:
        """Running -> Idle. An in-flight sweep is allowed to finish."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        logger.info("reconciliation_worker_stopped")

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task
            self._task = None

    def is_running(self) -> bool:
        return self._running

    def get_last_check_time(self) -> str:
        """ISO-8601 time of the latest sweep start; empty before the first one."""
        if self._last_check_time is None:
            return ""
        return self._last_check_time.isoformat()

    # ------------------------------------------------------------------
    # Main loop (run as asyncio task)
    # ------------------------------------------------------------------

    async def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.check_pools()
            except Exception as exc:
                logger.error("reconciliation_sweep_error", error=str(exc))

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._settings.check_interval_sec,
                )
                break  # stop was requested
            except asyncio.TimeoutError:
                pass

    async def check_pools(self) -> List[PoolOutcome]:
        """Run one sweep over every eligible pool and return the per-pool outcomes."""
        self._last_check_time = datetime.now(timezone.utc)

        try:
            pools = await self._store.list_eligible_pools()
        except Exception as exc:
            logger.error("pool_listing_failed", error=str(exc))
            return []

        if not pools:
            logger.debug("no_eligible_pools")
            return []

        semaphore = asyncio.Semaphore(self._settings.sweep_concurrency)

        async def _guarded(pool: PoolConfig) -> PoolOutcome:
            async with semaphore:
                return await self._process_pool_isolated(pool)

        outcomes = list(await asyncio.gather(*(_guarded(pool) for pool in pools)))

        rebalanced = sum(1 for o in outcomes if o.status == OutcomeStatus.REBALANCED)
        failed = sum(1 for o in outcomes if o.status in (OutcomeStatus.FAILED, OutcomeStatus.ERROR))
        logger.info(
            "reconciliation_sweep_complete",
            pools_checked=len(outcomes),
            rebalanced=rebalanced,
            failed=failed,
        )
        if self._settings.wandb_enabled:
            wandb.log({
                "worker/pools_checked": len(outcomes),
                "worker/rebalanced": rebalanced,
                "worker/failed": failed,
            })
        return outcomes

    async def rebalance_pool_now(self, pool_id: int) -> PoolOutcome:
        """Run the sweep pipeline for one pool outside the schedule."""
        pool = await self._store.get_pool(pool_id)
        if not pool.is_eligible:
            raise PoolNotEligibleError(
                f"pool {pool_id} is not eligible (status={pool.status.value}, "
                f"enabled={pool.enabled}, emergency_stop={pool.emergency_stop})"
            )
        logger.info("manual_rebalance_triggered", pool_id=pool_id)
        return await self._process_pool_isolated(pool)

    # ------------------------------------------------------------------
    # Per-pool pipeline
    # ------------------------------------------------------------------

    async def _process_pool_isolated(self, pool: PoolConfig) -> PoolOutcome:
        try:
            return await self._process_pool(pool)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("pool_check_error", pool_id=pool.pool_id, pair=pool.pair_name, error=error)
            await self._record_error(pool.pool_id, f"Rebalance check failed: {error}")
            return PoolOutcome(pool_id=pool.pool_id, status=OutcomeStatus.ERROR, error=error)

    async def _process_pool(self, pool: PoolConfig) -> PoolOutcome:
        state = await self._fetch_state(pool)
        await self._record_snapshot(pool, state)

        action = decide(pool, state)
        if action is None:
            logger.debug("pool_within_threshold", pool_id=pool.pool_id, pair=pool.pair_name)
            return PoolOutcome(pool_id=pool.pool_id, status=OutcomeStatus.NO_ACTION)

        logger.info(
            "rebalance_decided",
            pool_id=pool.pool_id,
            pair=pool.pair_name,
            action=action.describe(),
        )
        return await self._execute_and_record(pool, action)

    async def _fetch_state(self, pool: PoolConfig) -> PoolOnchainState:
        timeout = self._settings.pool_fetch_timeout_sec
        try:
            return await asyncio.wait_for(
                self._gateway.get_pool_state(pool.pool_address), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise PoolStateUnavailableError(
                f"pool state fetch timed out after {timeout}s"
            ) from exc

    async def _record_snapshot(self, pool: PoolConfig, state: PoolOnchainState) -> None:
        await self._store.update_derived_pool_state(
            pool.pool_id,
            token_a_reserve=state.token_a_amount,
            token_b_reserve=state.token_b_amount,
            last_price=state.current_price,
            last_ratio=current_ratio(state),
            rebalance_needed=needs_rebalance(pool, state),
            last_snapshot_at=datetime.now(timezone.utc),
        )

    async def _execute_and_record(self, pool: PoolConfig, action: RebalanceAction) -> PoolOutcome:
        async with self._store.transaction() as tx:
            result = await self._executor.execute(pool.pool_address, action)
            if result.success:
                await tx.insert_transaction_record(
                    pool_id=pool.pool_id,
                    action=action,
                    status=TransactionStatus.SUCCESS,
                    tx_signature=result.signature,
                )
                await tx.insert_event(
                    pool_id=pool.pool_id,
                    event_type=EventType.REBALANCED,
                    description=f"Rebalanced: {action.describe()} (tx {result.signature})",
                )
                await tx.update_derived_pool_state(pool.pool_id, rebalance_needed=False)
            else:
                await tx.rollback()

        if result.success:
            logger.info(
                "pool_rebalanced",
                pool_id=pool.pool_id,
                pair=pool.pair_name,
                side=action.type.value,
                amount=str(action.amount),
                signature=result.signature,
            )
            if self._settings.wandb_enabled:
                wandb.log({
                    "trade/pool_id": pool.pool_id,
                    "trade/side": action.type.value,
                    "trade/amount": float(action.amount),
                    "trade/price": float(action.expected_price),
                })
            return PoolOutcome(
                pool_id=pool.pool_id,
                status=OutcomeStatus.REBALANCED,
                action=action,
                signature=result.signature,
            )

        error = result.error or "unknown execution error"
        logger.warning("rebalance_failed", pool_id=pool.pool_id, pair=pool.pair_name, error=error)

        # Written in a fresh transaction once the attempt has been rolled back.
        async with self._store.transaction() as tx:
            await tx.insert_transaction_record(
                pool_id=pool.pool_id,
                action=action,
                status=TransactionStatus.FAILED,
                error_message=error,
            )
            await tx.insert_event(
                pool_id=pool.pool_id,
                event_type=EventType.ERROR,
                description=f"Rebalance failed: {action.describe()}: {error}",
            )
        return PoolOutcome(
            pool_id=pool.pool_id,
            status=OutcomeStatus.FAILED,
            action=action,
            error=error,
        )

    async def _record_error(self, pool_id: int, description: str) -> None:
        try:
            await self._store.insert_event(
                pool_id=pool_id,
                event_type=EventType.ERROR,
                description=description,
            )
        except Exception as exc:
            logger.error("error_event_write_failed", pool_id=pool_id, error=str(exc))
