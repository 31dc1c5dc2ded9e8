"""AMM gateway: reads on-chain pool state and submits swaps.

The gateway service owns the DEX SDK: transaction construction, signing with
the operator keypair, and confirmation wait. This module only speaks its
narrow HTTP interface:

  GET  /pools/{address}        -> {"tokenAAmount", "tokenBAmount", "currentPrice", "liquidity"}
  GET  /pools/{address}/route  -> routing info for the next swap
  POST /swap                   -> {"signature"} or {"error"}

When ``DRY_RUN=True`` swaps go through ``DryRunAmmGateway``: reads still hit
the real gateway, fills are simulated from the expected price plus a fixed
impact and checked against the slippage bounds. Nothing is sent on-chain.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Protocol

import requests
import structlog

from pool_rebalancer.config import Settings
from pool_rebalancer.errors import GatewayError, PoolStateUnavailableError
from pool_rebalancer.models import PoolOnchainState, TradeDirection

logger = structlog.get_logger()


@dataclass(frozen=True)
class SwapRequest:
    """One swap instruction, sized in token A units."""

    pool_address: str
    direction: TradeDirection
    amount: Decimal
    expected_price: Decimal
    min_received: Decimal
    max_spent: Decimal

    @property
    def is_base_input(self) -> bool:
        # Selling token A means token A is the input side.
        return self.direction == TradeDirection.SELL

    def to_payload(self) -> Dict[str, Any]:
        return {
            "poolAddress": self.pool_address,
            "direction": self.direction.value,
            "amount": str(self.amount),
            "minReceived": str(self.min_received),
            "maxSpent": str(self.max_spent),
            "isBaseInput": self.is_base_input,
        }


class AmmGateway(Protocol):
    """Narrow interface consumed by the worker and the executor."""

    async def get_pool_state(self, pool_address: str) -> PoolOnchainState: ...

    async def get_pool_route(self, pool_address: str) -> Dict[str, Any]: ...

    async def submit_swap(self, request: SwapRequest) -> str: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

def _to_decimal(payload: Dict[str, Any], key: str, pool_address: str) -> Decimal:
    raw = payload.get(key)
    if raw is None:
        raise PoolStateUnavailableError(f"pool {pool_address}: missing {key}")
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise PoolStateUnavailableError(f"pool {pool_address}: malformed {key}={raw!r}") from exc
    if not value.is_finite() or value < 0:
        raise PoolStateUnavailableError(f"pool {pool_address}: invalid {key}={raw!r}")
    return value


def parse_pool_state(pool_address: str, payload: Any) -> PoolOnchainState:
    """Turn a gateway pool payload into a typed state, rejecting malformed data."""
    if isinstance(payload, dict) and "data" in payload and isinstance(payload["data"], dict):
        payload = payload["data"]
    if not isinstance(payload, dict) or not payload:
        raise PoolStateUnavailableError(f"pool {pool_address}: pool data not found")

    liquidity = payload.get("liquidity")
    return PoolOnchainState(
        pool_address=pool_address,
        token_a_amount=_to_decimal(payload, "tokenAAmount", pool_address),
        token_b_amount=_to_decimal(payload, "tokenBAmount", pool_address),
        current_price=_to_decimal(payload, "currentPrice", pool_address),
        liquidity=_to_decimal(payload, "liquidity", pool_address) if liquidity is not None else Decimal(0),
    )


# ---------------------------------------------------------------------------
# HTTP gateway
# ---------------------------------------------------------------------------

class HttpAmmGateway:
    """Blocking ``requests`` calls, pushed to a worker thread per request."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "PoolRebalancer/1.0"})
        if api_key:
            self._session.headers.update({"Authorization": f"Bearer {api_key}"})

    async def get_pool_state(self, pool_address: str) -> PoolOnchainState:
        payload = await asyncio.to_thread(self._get_json, f"/pools/{pool_address}")
        state = parse_pool_state(pool_address, payload)
        logger.debug(
            "pool_state_fetched",
            pool_address=pool_address,
            token_a=str(state.token_a_amount),
            token_b=str(state.token_b_amount),
            price=str(state.current_price),
        )
        return state

    async def get_pool_route(self, pool_address: str) -> Dict[str, Any]:
        payload = await asyncio.to_thread(self._get_json, f"/pools/{pool_address}/route")
        if not isinstance(payload, dict) or not payload:
            raise PoolStateUnavailableError(f"pool {pool_address}: route info not found")
        return payload

    async def submit_swap(self, request: SwapRequest) -> str:
        payload = await asyncio.to_thread(self._post_json, "/swap", request.to_payload())
        if not isinstance(payload, dict):
            raise GatewayError("swap response is not an object")
        if payload.get("error"):
            raise GatewayError(str(payload["error"]))
        signature = payload.get("signature") or payload.get("txid")
        if not signature:
            raise GatewayError("swap response carries no signature")
        return str(signature)

    async def close(self) -> None:
        await asyncio.to_thread(self._session.close)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_json(self, path: str) -> Any:
        try:
            response = self._session.get(self._base_url + path, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise GatewayError(f"GET {path} failed: {exc}") from exc
        except ValueError as exc:
            raise GatewayError(f"GET {path} returned invalid JSON") from exc

    def _post_json(self, path: str, body: Dict[str, Any]) -> Any:
        try:
            response = self._session.post(self._base_url + path, json=body, timeout=self._timeout)
        except requests.RequestException as exc:
            raise GatewayError(f"POST {path} failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.status_code >= 400:
            detail = payload.get("error") if isinstance(payload, dict) else None
            raise GatewayError(detail or f"POST {path} failed with HTTP {response.status_code}")
        if payload is None:
            raise GatewayError(f"POST {path} returned invalid JSON")
        return payload


# ---------------------------------------------------------------------------
# Dry-run gateway
# ---------------------------------------------------------------------------

class DryRunAmmGateway:
    """Reads from a real gateway, simulates swap fills locally."""

    def __init__(self, reader: AmmGateway, price_impact: float = 0.001) -> None:
        self._reader = reader
        self._impact = Decimal(str(price_impact))
        self.fills: list[Dict[str, Any]] = []

    async def get_pool_state(self, pool_address: str) -> PoolOnchainState:
        return await self._reader.get_pool_state(pool_address)

    async def get_pool_route(self, pool_address: str) -> Dict[str, Any]:
        return await self._reader.get_pool_route(pool_address)

    async def submit_swap(self, request: SwapRequest) -> str:
        # Selling A moves the price against us downward, buying A upward.
        if request.direction == TradeDirection.SELL:
            fill_price = request.expected_price * (1 - self._impact)
            received = request.amount * fill_price
            if received < request.min_received:
                raise GatewayError(
                    f"slippage exceeded: received {received} < min {request.min_received}"
                )
        else:
            fill_price = request.expected_price * (1 + self._impact)
            spent = request.amount * fill_price
            if spent > request.max_spent:
                raise GatewayError(
                    f"slippage exceeded: spent {spent} > max {request.max_spent}"
                )

        signature = f"dryrun-{uuid.uuid4().hex[:16]}"
        fill = {
            "signature": signature,
            "pool_address": request.pool_address,
            "direction": request.direction.value,
            "amount": request.amount,
            "fill_price": fill_price,
        }
        self.fills.append(fill)
        logger.info(
            "dry_run_simulated_fill",
            pool_address=request.pool_address,
            side=request.direction.value,
            amount=str(request.amount),
            expected_price=str(request.expected_price),
            fill_price=str(fill_price),
            signature=signature,
        )
        return signature

    async def close(self) -> None:
        await self._reader.close()


def build_gateway(settings: Settings) -> AmmGateway:
    """Create the gateway the process should use, honoring DRY_RUN."""
    http = HttpAmmGateway(
        settings.gateway_url,
        api_key=settings.gateway_api_key,
        timeout=settings.gateway_timeout_sec,
    )
    if settings.dry_run:
        logger.info("gateway_started", mode="DRY_RUN", network=settings.network)
        return DryRunAmmGateway(http, price_impact=settings.dry_run_price_impact)
    logger.info("gateway_started", mode="LIVE", network=settings.network, url=settings.gateway_url)
    return http
