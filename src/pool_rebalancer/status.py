"""Read-only status projection of the reconciliation worker and the pool registry."""

from __future__ import annotations

from typing import Optional

from pool_rebalancer.database import PoolStore
from pool_rebalancer.models import WorkerStatus
from pool_rebalancer.worker import ReconciliationWorker


class WorkerStatusReporter:
    """Combines in-memory worker state with store counters. Writes nothing."""

    def __init__(self, store: PoolStore, worker: Optional[ReconciliationWorker] = None) -> None:
        self._store = store
        self._worker = worker

    async def snapshot(self) -> WorkerStatus:
        return WorkerStatus(
            is_running=self._worker.is_running() if self._worker else False,
            last_check=self._worker.get_last_check_time() if self._worker else "",
            active_pools_count=await self._store.count_active_pools(),
            pending_rebalances=await self._store.count_pending_rebalances(),
            last_error=await self._store.latest_error_event(),
        )
