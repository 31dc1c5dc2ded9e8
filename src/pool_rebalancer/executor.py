"""Rebalance executor: submits a decided trade through the AMM gateway.

Routing info is fetched right before submission; the decision and the
execution are not atomic with respect to on-chain state, the slippage bounds
carried by the action cover the gap. Failures of any kind come back as an
unsuccessful ``ExecutionResult``; retrying is left to the next sweep.
"""

from __future__ import annotations

import asyncio

import structlog

from pool_rebalancer.gateway import AmmGateway, SwapRequest
from pool_rebalancer.models import ExecutionResult, RebalanceAction

logger = structlog.get_logger()


class RebalanceExecutor:
    """Executes one rebalance swap per call, bounded by ``timeout`` seconds."""

    def __init__(self, gateway: AmmGateway, timeout: float = 60.0) -> None:
        self._gateway = gateway
        self._timeout = timeout

    async def execute(self, pool_address: str, action: RebalanceAction) -> ExecutionResult:
        logger.info(
            "executing_rebalance",
            pool_address=pool_address,
            side=action.type.value,
            amount=str(action.amount),
            expected_price=str(action.expected_price),
            min_received=str(action.min_received),
            max_spent=str(action.max_spent),
        )
        try:
            signature = await asyncio.wait_for(
                self._submit(pool_address, action), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.error("rebalance_execution_timeout", pool_address=pool_address, timeout=self._timeout)
            return ExecutionResult(
                signature="",
                success=False,
                error=f"execution timed out after {self._timeout}s",
            )
        except Exception as exc:
            logger.error("rebalance_execution_error", pool_address=pool_address, error=str(exc))
            return ExecutionResult(signature="", success=False, error=str(exc) or type(exc).__name__)

        logger.info("rebalance_execution_complete", pool_address=pool_address, signature=signature)
        return ExecutionResult(signature=signature, success=True)

    async def _submit(self, pool_address: str, action: RebalanceAction) -> str:
        route = await self._gateway.get_pool_route(pool_address)
        logger.debug("pool_route_fetched", pool_address=pool_address, route_keys=sorted(route))

        request = SwapRequest(
            pool_address=pool_address,
            direction=action.type,
            amount=action.amount,
            expected_price=action.expected_price,
            min_received=action.min_received,
            max_spent=action.max_spent,
        )
        return await self._gateway.submit_swap(request)
