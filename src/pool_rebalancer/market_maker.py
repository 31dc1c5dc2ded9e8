"""Market-maker tick: per-pool quote computation on its own schedule.

Every ``mm_tick_interval_sec`` (default 15 s), independent of the
reconciliation sweep:
  - read on-chain state for each eligible pool
  - quote size = 1% of the token A reserve, clamped to [min_order_size, max_order_size]
  - bid / ask = price shifted by the configured spreads
  - record an EXECUTION event carrying the quote

The ticker never trades. When the token A position grows past
``max_position_size`` and ``auto_rebalance`` is set, it flags the pool
``rebalance_needed`` and leaves the trade to the reconciliation worker.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

import structlog

from pool_rebalancer.config import Settings
from pool_rebalancer.database import PoolStore
from pool_rebalancer.decider import clamp
from pool_rebalancer.errors import PoolNotEligibleError
from pool_rebalancer.gateway import AmmGateway
from pool_rebalancer.models import EventType, MarketMakingParams, PoolConfig, PoolOnchainState

logger = structlog.get_logger()

ORDER_SIZE_FRACTION = Decimal("0.01")


@dataclass(frozen=True)
class MarketQuote:
    pool_id: int
    order_size: Decimal
    bid_price: Decimal
    ask_price: Decimal
    position: Decimal
    rebalance_requested: bool = False

    def to_json(self) -> str:
        return json.dumps(
            {
                "orderSize": str(self.order_size),
                "bidPrice": str(self.bid_price),
                "askPrice": str(self.ask_price),
                "position": str(self.position),
                "rebalanceRequested": self.rebalance_requested,
            }
        )


def compute_quote(pool_id: int, params: MarketMakingParams, state: PoolOnchainState) -> MarketQuote:
    order_size = clamp(
        state.token_a_amount * ORDER_SIZE_FRACTION,
        params.min_order_size,
        params.max_order_size,
    )
    position = state.token_a_amount
    return MarketQuote(
        pool_id=pool_id,
        order_size=order_size,
        bid_price=state.current_price * (1 - params.bid_spread),
        ask_price=state.current_price * (1 + params.ask_spread),
        position=position,
        rebalance_requested=params.auto_rebalance and position > params.max_position_size,
    )


class MarketMakerTicker:
    """Quote loop over eligible pools; failures are isolated per pool."""

    def __init__(self, settings: Settings, store: PoolStore, gateway: AmmGateway) -> None:
        self._settings = settings
        self._store = store
        self._gateway = gateway

        self._stop_event = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.wait_closed()
        if not self._running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="market-maker-ticker")
        logger.info("market_maker_started", interval_sec=self._settings.mm_tick_interval_sec)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        logger.info("market_maker_stopped")

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task
            self._task = None

    def is_running(self) -> bool:
        return self._running

    async def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.error("market_maker_tick_error", error=str(exc))

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._settings.mm_tick_interval_sec,
                )
                break
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> List[MarketQuote]:
        pools = await self._store.list_eligible_pools()
        quotes: List[MarketQuote] = []
        for pool in pools:
            try:
                quotes.append(await self._quote_pool(pool))
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                logger.error("market_maker_pool_error", pool_id=pool.pool_id, error=error)
                await self._record_error(pool.pool_id, f"Market-maker tick failed: {error}")
        return quotes

    async def execute_once(self, pool_id: int) -> MarketQuote:
        """Quote one pool immediately; the pool must be eligible."""
        pool = await self._store.get_pool(pool_id)
        if not pool.is_eligible:
            raise PoolNotEligibleError(f"market making is not enabled for pool {pool_id}")
        return await self._quote_pool(pool)

    async def _record_error(self, pool_id: int, description: str) -> None:
        try:
            await self._store.insert_event(
                pool_id=pool_id,
                event_type=EventType.ERROR,
                description=description,
            )
        except Exception as exc:
            logger.error("error_event_write_failed", pool_id=pool_id, error=str(exc))

    async def _quote_pool(self, pool: PoolConfig) -> MarketQuote:
        state = await asyncio.wait_for(
            self._gateway.get_pool_state(pool.pool_address),
            timeout=self._settings.pool_fetch_timeout_sec,
        )
        quote = compute_quote(pool.pool_id, pool.market_making, state)

        async with self._store.transaction() as tx:
            if quote.rebalance_requested:
                await tx.update_derived_pool_state(pool.pool_id, rebalance_needed=True)
            await tx.insert_event(
                pool_id=pool.pool_id,
                event_type=EventType.EXECUTION,
                description=quote.to_json(),
            )

        if quote.rebalance_requested:
            logger.warning(
                "position_limit_exceeded",
                pool_id=pool.pool_id,
                position=str(quote.position),
                max_position=str(pool.market_making.max_position_size),
            )
        logger.debug(
            "market_maker_quote",
            pool_id=pool.pool_id,
            order_size=str(quote.order_size),
            bid=str(quote.bid_price),
            ask=str(quote.ask_price),
        )
        return quote
