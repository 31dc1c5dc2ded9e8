"""Rebalance decision: pure function from (config, on-chain state) to a trade.

Trigger rule: the relative deviation ``|current - target| / target`` must be
strictly greater than the pool's ``rebalance_threshold``. This rule is used by
both the scheduled sweep and the manual trigger; there is no separate fixed
absolute threshold.

Trade sizing moves half of the value imbalance under a linear value model, so
the post-trade ratio is approximate; the slippage bounds absorb the residual.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pool_rebalancer.models import (
    PoolConfig,
    PoolOnchainState,
    RebalanceAction,
    TradeDirection,
)

_ONE = Decimal(1)
_TWO = Decimal(2)


def current_ratio(state: PoolOnchainState) -> Optional[Decimal]:
    """Value-weighted ratio of token A to token B, or None when undefined."""
    if state.current_price <= 0:
        return None
    return state.current_ratio


def ratio_deviation(config: PoolConfig, state: PoolOnchainState) -> Optional[Decimal]:
    """Relative distance of the current ratio from the target ratio."""
    ratio = current_ratio(state)
    if ratio is None:
        return None
    return abs(ratio - config.target_ratio) / config.target_ratio


def needs_rebalance(config: PoolConfig, state: PoolOnchainState) -> bool:
    deviation = ratio_deviation(config, state)
    return deviation is not None and deviation > config.rebalance_threshold


def clamp(value: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    return max(lower, min(upper, value))


def decide(config: PoolConfig, state: PoolOnchainState) -> Optional[RebalanceAction]:
    """Return the bounded corrective trade for a pool, or None when no action is needed.

    Degenerate state (empty token B side or a non-positive price) yields None
    rather than raising.
    """
    ratio = current_ratio(state)
    if ratio is None:
        return None

    target = config.target_ratio
    if abs(ratio - target) / target <= config.rebalance_threshold:
        return None

    price = state.current_price
    is_selling_token_a = ratio > target

    if is_selling_token_a:
        raw_amount = state.token_a_amount * (ratio - target) / (_TWO * ratio)
    else:
        raw_amount = state.token_b_amount * (target - ratio) / (_TWO * target * price)

    amount = clamp(raw_amount, config.min_trade_size, config.max_trade_size)
    slippage = config.max_slippage

    if is_selling_token_a:
        min_received = amount * price * (_ONE - slippage)
        max_spent = amount
    else:
        min_received = (amount / price) * (_ONE - slippage)
        max_spent = amount * price * (_ONE + slippage)

    return RebalanceAction(
        type=TradeDirection.SELL if is_selling_token_a else TradeDirection.BUY,
        amount=amount,
        expected_price=price,
        min_received=min_received,
        max_spent=max_spent,
    )
