from decimal import Decimal

import pytest
import pytest_asyncio

from pool_rebalancer.config import Settings
from pool_rebalancer.database import PoolStore
from pool_rebalancer.errors import GatewayError, PoolStateUnavailableError
from pool_rebalancer.models import PoolConfig, PoolOnchainState

POOL_ADDRESSES = [
    "58oQChx4yWmvKdwLLZzBi4ChoCc2fqCUWBkwMihLYQo2",
    "7XawhbbxtsRcQA8KTkHT9f9nc6d69UwqCDh6U5EEbEmX",
    "Czfq3xZZDmsdGdUyrNLtRhGc47cXcZtLG4crryfu44zE",
    "HJPjoWUrhoZzkNfRpHuieeFk9WcZWjwy6PBjZ81bmSkD",
]


def make_state(address, token_a, token_b, price):
    return PoolOnchainState(
        pool_address=address,
        token_a_amount=Decimal(str(token_a)),
        token_b_amount=Decimal(str(token_b)),
        current_price=Decimal(str(price)),
    )


def make_config(**overrides):
    data = {
        "pool_id": 1,
        "pool_address": POOL_ADDRESSES[0],
        "token_a_symbol": "SOL",
        "token_b_symbol": "USDC",
        "target_ratio": Decimal("0.5"),
        "rebalance_threshold": Decimal("0.05"),
        "min_trade_size": Decimal("0.1"),
        "max_trade_size": Decimal("50"),
        "max_slippage": Decimal("0.01"),
        "enabled": True,
    }
    data.update(overrides)
    return PoolConfig(**data)


class FakeGateway:
    def __init__(self, states=None, failing=()):
        self.states = dict(states or {})
        self.failing = set(failing)
        self.swap_error = None
        self.swaps = []
        self.routes = []
        self.closed = False

    async def get_pool_state(self, pool_address):
        if pool_address in self.failing:
            raise PoolStateUnavailableError(f"pool {pool_address}: rpc unavailable")
        state = self.states.get(pool_address)
        if state is None:
            raise PoolStateUnavailableError(f"pool {pool_address}: pool data not found")
        return state

    async def get_pool_route(self, pool_address):
        self.routes.append(pool_address)
        return {"poolAddress": pool_address, "tickArrays": []}

    async def submit_swap(self, request):
        self.swaps.append(request)
        if self.swap_error:
            raise GatewayError(self.swap_error)
        return f"sig{len(self.swaps)}"

    async def close(self):
        self.closed = True


async def register(store, address, **overrides):
    params = {
        "pool_address": address,
        "token_a_symbol": "SOL",
        "token_b_symbol": "USDC",
        "target_ratio": 0.5,
        "rebalance_threshold": 0.05,
        "min_trade_size": 0.1,
        "max_trade_size": 50,
        "max_slippage": 0.01,
        "enabled": True,
    }
    params.update(overrides)
    return await store.register_pool(**params)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        check_interval_sec=0.05,
        mm_tick_interval_sec=0.05,
        pool_fetch_timeout_sec=1.0,
        execution_timeout_sec=1.0,
        wandb_enabled=False,
        wandb_api_key="",
        emergency_stop=False,
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    pool_store = PoolStore(f"sqlite+aiosqlite:///{tmp_path / 'pools.db'}")
    await pool_store.init()
    yield pool_store
    await pool_store.close()
