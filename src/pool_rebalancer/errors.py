"""Exception types raised across the rebalancer."""

from __future__ import annotations


class PoolRebalancerError(Exception):
    """Base error for the pool rebalancer."""


class InvalidPoolConfigError(PoolRebalancerError):
    """Raised when a pool row or an admin change violates the strategy invariants."""

    def __init__(self, pool_id: object, reason: str) -> None:
        super().__init__(f"invalid config for pool {pool_id}: {reason}")
        self.pool_id = pool_id
        self.reason = reason


class PoolNotFoundError(PoolRebalancerError):
    """Raised when a pool id does not exist."""


class PoolNotEligibleError(PoolRebalancerError):
    """Raised when a manual trigger targets an inactive, disabled or stopped pool."""


class PoolStateUnavailableError(PoolRebalancerError):
    """Raised when the gateway returns no usable on-chain state for a pool."""


class GatewayError(PoolRebalancerError):
    """Raised when the AMM gateway rejects a request or answers with an error."""
