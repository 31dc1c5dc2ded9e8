import asyncio
from decimal import Decimal

import pytest

from conftest import POOL_ADDRESSES, FakeGateway
from pool_rebalancer.executor import RebalanceExecutor
from pool_rebalancer.models import RebalanceAction, TradeDirection

ADDRESS = POOL_ADDRESSES[0]

ACTION = RebalanceAction(
    type=TradeDirection.BUY,
    amount=Decimal("5"),
    expected_price=Decimal("2"),
    min_received=Decimal("2.475"),
    max_spent=Decimal("10.1"),
)


class SlowGateway(FakeGateway):
    async def submit_swap(self, request):
        await asyncio.sleep(5)
        return "never"


@pytest.mark.asyncio
async def test_execute_success_fetches_route_then_submits():
    gateway = FakeGateway()
    executor = RebalanceExecutor(gateway)

    result = await executor.execute(ADDRESS, ACTION)

    assert result.success is True
    assert result.signature == "sig1"
    assert result.error is None
    assert gateway.routes == [ADDRESS]
    request = gateway.swaps[0]
    assert request.direction == TradeDirection.BUY
    assert request.amount == Decimal("5")
    assert request.min_received == Decimal("2.475")
    assert request.max_spent == Decimal("10.1")


@pytest.mark.asyncio
async def test_execute_failure_is_returned_not_raised():
    gateway = FakeGateway()
    gateway.swap_error = "slippage exceeded"

    result = await RebalanceExecutor(gateway).execute(ADDRESS, ACTION)

    assert result.success is False
    assert result.signature == ""
    assert result.error == "slippage exceeded"


@pytest.mark.asyncio
async def test_execute_times_out():
    result = await RebalanceExecutor(SlowGateway(), timeout=0.05).execute(ADDRESS, ACTION)

    assert result.success is False
    assert "timed out" in result.error
