import asyncio

import pytest

from conftest import POOL_ADDRESSES, FakeGateway, make_state, register
from pool_rebalancer.database import PoolStoreTransaction
from pool_rebalancer.errors import PoolNotEligibleError
from pool_rebalancer.models import EventType, Pool, TradeDirection
from pool_rebalancer.worker import OutcomeStatus, ReconciliationWorker


async def _pool_row(store, pool_id):
    async with store.session() as session:
        return await session.get(Pool, pool_id)


@pytest.mark.asyncio
async def test_sweep_rebalances_and_commits_record_with_event(settings, store):
    pool = await register(store, POOL_ADDRESSES[0])
    gateway = FakeGateway({POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 100, 100, 1)})
    worker = ReconciliationWorker(settings, store, gateway)

    outcomes = await worker.check_pools()

    assert [o.status for o in outcomes] == [OutcomeStatus.REBALANCED]
    assert outcomes[0].action.type == TradeDirection.SELL
    assert outcomes[0].signature == "sig1"

    records = await store.recent_transactions(pool_id=pool.pool_id)
    assert [(r.status, r.tx_signature) for r in records] == [("SUCCESS", "sig1")]
    assert float(records[0].amount) == pytest.approx(25)
    rebalanced = await store.recent_events(pool_id=pool.pool_id, event_type=EventType.REBALANCED)
    assert len(rebalanced) == 1

    row = await _pool_row(store, pool.pool_id)
    assert row.rebalance_needed is False
    assert float(row.last_ratio) == pytest.approx(1.0)
    assert row.last_snapshot_at is not None
    assert worker.get_last_check_time() != ""


@pytest.mark.asyncio
async def test_balanced_pool_is_snapshotted_without_trading(settings, store):
    pool = await register(store, POOL_ADDRESSES[0])
    gateway = FakeGateway({POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 50, 100, 1)})

    outcomes = await ReconciliationWorker(settings, store, gateway).check_pools()

    assert outcomes[0].status == OutcomeStatus.NO_ACTION
    assert gateway.swaps == []
    row = await _pool_row(store, pool.pool_id)
    assert float(row.token_a_reserve) == pytest.approx(50)
    assert await store.recent_transactions() == []


@pytest.mark.asyncio
async def test_failing_pool_does_not_stop_the_sweep(settings, store):
    first = await register(store, POOL_ADDRESSES[0])
    broken = await register(store, POOL_ADDRESSES[1])
    last = await register(store, POOL_ADDRESSES[2])
    gateway = FakeGateway(
        {
            POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 100, 100, 1),
            POOL_ADDRESSES[2]: make_state(POOL_ADDRESSES[2], 50, 100, 1),
        },
        failing={POOL_ADDRESSES[1]},
    )
    worker = ReconciliationWorker(settings.model_copy(update={"sweep_concurrency": 2}), store, gateway)

    outcomes = {o.pool_id: o for o in await worker.check_pools()}

    assert outcomes[first.pool_id].status == OutcomeStatus.REBALANCED
    assert outcomes[broken.pool_id].status == OutcomeStatus.ERROR
    assert outcomes[last.pool_id].status == OutcomeStatus.NO_ACTION
    errors = await store.recent_events(pool_id=broken.pool_id, event_type=EventType.ERROR)
    assert len(errors) == 1
    assert "rpc unavailable" in errors[0].description


@pytest.mark.asyncio
async def test_failed_execution_rolls_back_and_records_error(settings, store):
    failing = await register(store, POOL_ADDRESSES[0])
    other = await register(store, POOL_ADDRESSES[1])
    gateway = FakeGateway(
        {
            POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 100, 100, 1),
            POOL_ADDRESSES[1]: make_state(POOL_ADDRESSES[1], 50, 100, 1),
        }
    )
    gateway.swap_error = "slippage exceeded"

    outcomes = {o.pool_id: o for o in await ReconciliationWorker(settings, store, gateway).check_pools()}

    assert outcomes[failing.pool_id].status == OutcomeStatus.FAILED
    assert outcomes[failing.pool_id].error == "slippage exceeded"
    assert outcomes[other.pool_id].status == OutcomeStatus.NO_ACTION

    records = await store.recent_transactions(pool_id=failing.pool_id)
    assert [r.status for r in records] == ["FAILED"]
    assert records[0].tx_signature == ""
    assert records[0].error_message == "slippage exceeded"
    assert await store.recent_events(pool_id=failing.pool_id, event_type=EventType.REBALANCED) == []
    errors = await store.recent_events(pool_id=failing.pool_id, event_type=EventType.ERROR)
    assert len(errors) == 1
    assert "slippage exceeded" in errors[0].description

    row = await _pool_row(store, failing.pool_id)
    assert row.rebalance_needed is True


@pytest.mark.asyncio
async def test_emergency_stopped_pool_is_never_processed(settings, store):
    stopped = await register(store, POOL_ADDRESSES[0])
    await store.set_emergency_stop(stopped.pool_id, True)
    gateway = FakeGateway({POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 100, 100, 1)})

    outcomes = await ReconciliationWorker(settings, store, gateway).check_pools()

    assert outcomes == []
    assert gateway.swaps == []


@pytest.mark.asyncio
async def test_listing_failure_aborts_only_that_sweep(settings, store, monkeypatch):
    async def broken_listing():
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "list_eligible_pools", broken_listing)
    worker = ReconciliationWorker(settings, store, FakeGateway())

    assert await worker.check_pools() == []
    assert worker.get_last_check_time() != ""


@pytest.mark.asyncio
async def test_start_stop_lifecycle(settings, store):
    worker = ReconciliationWorker(settings, store, FakeGateway())
    assert worker.is_running() is False
    assert worker.get_last_check_time() == ""

    await worker.start()
    first_task = worker._task
    await worker.start()
    assert worker._task is first_task
    assert worker.is_running() is True

    for _ in range(100):
        if worker.get_last_check_time():
            break
        await asyncio.sleep(0.01)
    assert worker.get_last_check_time() != ""

    await worker.stop()
    assert worker.is_running() is False
    await asyncio.wait_for(worker.wait_closed(), timeout=1.0)


@pytest.mark.asyncio
async def test_manual_rebalance_runs_pipeline_for_one_pool(settings, store):
    pool = await register(store, POOL_ADDRESSES[0])
    disabled = await register(store, POOL_ADDRESSES[1], enabled=False)
    gateway = FakeGateway({POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 20, 100, 2)})
    worker = ReconciliationWorker(settings, store, gateway)

    outcome = await worker.rebalance_pool_now(pool.pool_id)

    assert outcome.status == OutcomeStatus.REBALANCED
    assert outcome.action.type == TradeDirection.BUY
    with pytest.raises(PoolNotEligibleError):
        await worker.rebalance_pool_now(disabled.pool_id)


class SlowGateway(FakeGateway):
    """Sleeps inside ``get_pool_state`` and tracks how many fetches overlap."""

    def __init__(self, states=None, delay=0.2, slow=None):
        super().__init__(states)
        self.delay = delay
        self.slow = slow
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_pool_state(self, pool_address):
        if self.slow is None or pool_address in self.slow:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await asyncio.sleep(self.delay)
            finally:
                self.in_flight -= 1
        return await super().get_pool_state(pool_address)


@pytest.mark.asyncio
async def test_restart_during_sweep_keeps_a_single_loop(settings, store):
    await register(store, POOL_ADDRESSES[0])
    gateway = SlowGateway({POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 50, 100, 1)})
    worker = ReconciliationWorker(settings, store, gateway)

    await worker.start()
    await asyncio.sleep(0.05)
    await worker.stop()
    await worker.start()
    assert worker.is_running() is True
    await asyncio.sleep(0.6)

    await worker.stop()
    await asyncio.wait_for(worker.wait_closed(), timeout=1.0)
    assert gateway.max_in_flight == 1


@pytest.mark.asyncio
async def test_fetch_timeout_is_recorded_and_sweep_continues(settings, store):
    slow = await register(store, POOL_ADDRESSES[0])
    fast = await register(store, POOL_ADDRESSES[1])
    gateway = SlowGateway(
        {
            POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 100, 100, 1),
            POOL_ADDRESSES[1]: make_state(POOL_ADDRESSES[1], 100, 100, 1),
        },
        delay=0.5,
        slow={POOL_ADDRESSES[0]},
    )
    worker = ReconciliationWorker(
        settings.model_copy(update={"pool_fetch_timeout_sec": 0.05}), store, gateway
    )

    outcomes = {o.pool_id: o for o in await worker.check_pools()}

    assert outcomes[slow.pool_id].status == OutcomeStatus.ERROR
    assert "timed out" in outcomes[slow.pool_id].error
    assert outcomes[fast.pool_id].status == OutcomeStatus.REBALANCED
    errors = await store.recent_events(pool_id=slow.pool_id, event_type=EventType.ERROR)
    assert len(errors) == 1
    assert "timed out" in errors[0].description
    assert await store.recent_transactions(pool_id=slow.pool_id) == []


@pytest.mark.asyncio
async def test_commit_failure_after_swap_leaves_no_success_rows(settings, store, monkeypatch):
    broken = await register(store, POOL_ADDRESSES[0])
    other = await register(store, POOL_ADDRESSES[1])
    gateway = FakeGateway(
        {
            POOL_ADDRESSES[0]: make_state(POOL_ADDRESSES[0], 100, 100, 1),
            POOL_ADDRESSES[1]: make_state(POOL_ADDRESSES[1], 50, 100, 1),
        }
    )

    original_insert_event = PoolStoreTransaction.insert_event
    original_commit = PoolStoreTransaction.commit
    staged_rebalances = set()

    async def tracking_insert_event(self, **kwargs):
        if kwargs["event_type"] == EventType.REBALANCED:
            staged_rebalances.add(id(self))
        return await original_insert_event(self, **kwargs)

    async def failing_commit(self):
        if id(self) in staged_rebalances:
            staged_rebalances.discard(id(self))
            raise RuntimeError("disk I/O error")
        await original_commit(self)

    monkeypatch.setattr(PoolStoreTransaction, "insert_event", tracking_insert_event)
    monkeypatch.setattr(PoolStoreTransaction, "commit", failing_commit)

    outcomes = {o.pool_id: o for o in await ReconciliationWorker(settings, store, gateway).check_pools()}

    assert len(gateway.swaps) == 1
    assert outcomes[broken.pool_id].status == OutcomeStatus.ERROR
    assert outcomes[other.pool_id].status == OutcomeStatus.NO_ACTION
    assert await store.recent_transactions() == []
    assert await store.recent_events(event_type=EventType.REBALANCED) == []
    errors = await store.recent_events(pool_id=broken.pool_id, event_type=EventType.ERROR)
    assert len(errors) == 1
    assert "disk I/O error" in errors[0].description
