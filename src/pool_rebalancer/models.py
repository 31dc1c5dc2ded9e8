"""Data models for the pool rebalancer.

Includes:
- SQLAlchemy ORM models for pools, strategy configs, transactions and events
- Pydantic models for validated pool configuration and status projections
- Dataclasses for transient on-chain state, decisions and execution results
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase

from pool_rebalancer.errors import InvalidPoolConfigError

# Solana addresses are 32-byte keys rendered in base58.
_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

AMOUNT = Numeric(38, 18)


# ---------------------------------------------------------------------------
# Enumerations (stored as their string values)
# ---------------------------------------------------------------------------

class PoolStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class TradeDirection(str, Enum):
    BUY = "BUY"  # acquire token A by spending token B
    SELL = "SELL"  # dispose token A for token B


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class EventType(str, Enum):
    CREATED = "CREATED"
    CONFIG_CHANGED = "CONFIG_CHANGED"
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    EMERGENCY_STOP = "EMERGENCY_STOP"
    REBALANCED = "REBALANCED"
    ERROR = "ERROR"
    EXECUTION = "EXECUTION"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


# ---------------------------------------------------------------------------
# SQLAlchemy Base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ORM models."""
    pass


# ---------------------------------------------------------------------------
# Pool: identity, token metadata and worker-derived state
# ---------------------------------------------------------------------------

class Pool(Base):
    """A managed liquidity position paired to one on-chain AMM/CLMM pool.

    Never deleted; ``status`` is flipped to INACTIVE instead.
    """

    __tablename__ = "mmt_pools"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    pool_address: str = Column(String(64), nullable=False, unique=True)
    token_a_address: str = Column(String(64), default="")
    token_b_address: str = Column(String(64), default="")
    token_a_symbol: str = Column(String(32), default="")
    token_b_symbol: str = Column(String(32), default="")
    token_a_decimals: int = Column(Integer, default=9)
    token_b_decimals: int = Column(Integer, default=6)
    status: str = Column(String(16), default=PoolStatus.ACTIVE.value, nullable=False)

    # Derived state, written by the worker only
    rebalance_needed: bool = Column(Boolean, default=False, nullable=False)
    token_a_reserve = Column(AMOUNT, nullable=True)
    token_b_reserve = Column(AMOUNT, nullable=True)
    last_price = Column(AMOUNT, nullable=True)
    last_ratio = Column(AMOUNT, nullable=True)
    last_snapshot_at = Column(DateTime(timezone=True), nullable=True)

    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True), default=func.now()
    )
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Pool {self.id} {self.token_a_symbol}/{self.token_b_symbol} status={self.status}>"


class PoolConfigRow(Base):
    """Strategy and control parameters for one pool (admin-owned)."""

    __tablename__ = "mmt_pool_configs"

    pool_id: int = Column(Integer, ForeignKey("mmt_pools.id"), primary_key=True)

    target_ratio = Column(AMOUNT, nullable=False)
    rebalance_threshold = Column(AMOUNT, nullable=False)
    min_trade_size = Column(AMOUNT, nullable=False)
    max_trade_size = Column(AMOUNT, nullable=False)
    max_slippage = Column(AMOUNT, nullable=False)
    enabled: bool = Column(Boolean, default=False, nullable=False)
    emergency_stop: bool = Column(Boolean, default=False, nullable=False)

    # Market-maker quote parameters
    bid_spread = Column(AMOUNT, default=Decimal("0.002"))
    ask_spread = Column(AMOUNT, default=Decimal("0.002"))
    min_order_size = Column(AMOUNT, default=Decimal("0.1"))
    max_order_size = Column(AMOUNT, default=Decimal("500"))
    max_position_size = Column(AMOUNT, default=Decimal("5000"))
    auto_rebalance: bool = Column(Boolean, default=True, nullable=False)

    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )


class TransactionRecord(Base):
    """Append-only audit row for one executor invocation."""

    __tablename__ = "mmt_transactions"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    pool_id: int = Column(Integer, ForeignKey("mmt_pools.id"), nullable=False, index=True)
    action_type: str = Column(String(16), default="REBALANCE", nullable=False)
    direction: str = Column(String(8), nullable=False)
    amount = Column(AMOUNT, nullable=False)
    price = Column(AMOUNT, nullable=False)
    min_received = Column(AMOUNT, nullable=True)
    max_spent = Column(AMOUNT, nullable=True)
    tx_signature: str = Column(String(128), default="", nullable=False)
    status: str = Column(String(16), default=TransactionStatus.PENDING.value, nullable=False)
    error_message: Optional[str] = Column(Text, nullable=True)
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True), default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionRecord {self.id} pool={self.pool_id} {self.direction} "
            f"{self.amount} status={self.status}>"
        )


class PoolEvent(Base):
    """Append-only observability row (never updated, never deleted)."""

    __tablename__ = "mmt_pool_events"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    pool_id: Optional[int] = Column(Integer, ForeignKey("mmt_pools.id"), nullable=True, index=True)
    event_type: str = Column(String(32), nullable=False, index=True)
    description: str = Column(Text, default="", nullable=False)
    severity: str = Column(String(16), default=Severity.INFO.value, nullable=False)
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True), default=func.now(), index=True
    )


# ---------------------------------------------------------------------------
# PoolConfig: validated view of a pool + its config row
# ---------------------------------------------------------------------------

class MarketMakingParams(BaseModel):
    """Quote parameters used by the market-maker tick."""

    model_config = ConfigDict(frozen=True)

    bid_spread: Decimal = Field(default=Decimal("0.002"), ge=0, lt=1)
    ask_spread: Decimal = Field(default=Decimal("0.002"), ge=0, lt=1)
    min_order_size: Decimal = Field(default=Decimal("0.1"), ge=0)
    max_order_size: Decimal = Field(default=Decimal("500"), gt=0)
    max_position_size: Decimal = Field(default=Decimal("5000"), gt=0)
    auto_rebalance: bool = True


class PoolConfig(BaseModel):
    """Everything the decision function needs to know about one pool."""

    model_config = ConfigDict(frozen=True)

    pool_id: int
    pool_address: str
    token_a_address: str = ""
    token_b_address: str = ""
    token_a_symbol: str = ""
    token_b_symbol: str = ""
    token_a_decimals: int = Field(default=9, ge=0, le=18)
    token_b_decimals: int = Field(default=6, ge=0, le=18)
    status: PoolStatus = PoolStatus.ACTIVE

    target_ratio: Decimal = Field(gt=0, lt=1)
    rebalance_threshold: Decimal = Field(gt=0)
    min_trade_size: Decimal = Field(gt=0)
    max_trade_size: Decimal = Field(gt=0)
    max_slippage: Decimal = Field(ge=0, lt=1)
    enabled: bool = False
    emergency_stop: bool = False

    market_making: MarketMakingParams = Field(default_factory=MarketMakingParams)

    @field_validator("pool_address")
    @classmethod
    def _check_pool_address(cls, value: str) -> str:
        if not _BASE58_ADDRESS.match(value or ""):
            raise ValueError("pool_address is not a base58 Solana address")
        return value

    @field_validator("token_a_address", "token_b_address")
    @classmethod
    def _check_token_address(cls, value: str) -> str:
        if value and not _BASE58_ADDRESS.match(value):
            raise ValueError("token address is not a base58 Solana address")
        return value

    @model_validator(mode="after")
    def _check_trade_bounds(self) -> PoolConfig:
        if self.min_trade_size > self.max_trade_size:
            raise ValueError("min_trade_size must not exceed max_trade_size")
        return self

    @property
    def pair_name(self) -> str:
        return f"{self.token_a_symbol or '?'}/{self.token_b_symbol or '?'}"

    @property
    def is_eligible(self) -> bool:
        """Active, strategy-enabled and not under emergency stop."""
        return (
            self.status == PoolStatus.ACTIVE
            and self.enabled
            and not self.emergency_stop
        )

    @classmethod
    def from_rows(cls, pool: Pool, config: PoolConfigRow) -> PoolConfig:
        """Build a validated config from ORM rows; raise InvalidPoolConfigError otherwise."""
        data: dict[str, Any] = {
            "pool_id": pool.id,
            "pool_address": pool.pool_address,
            "token_a_address": pool.token_a_address or "",
            "token_b_address": pool.token_b_address or "",
            "token_a_symbol": pool.token_a_symbol or "",
            "token_b_symbol": pool.token_b_symbol or "",
            "token_a_decimals": pool.token_a_decimals,
            "token_b_decimals": pool.token_b_decimals,
            "status": pool.status,
            "target_ratio": config.target_ratio,
            "rebalance_threshold": config.rebalance_threshold,
            "min_trade_size": config.min_trade_size,
            "max_trade_size": config.max_trade_size,
            "max_slippage": config.max_slippage,
            "enabled": config.enabled,
            "emergency_stop": config.emergency_stop,
            "market_making": {
                "bid_spread": config.bid_spread,
                "ask_spread": config.ask_spread,
                "min_order_size": config.min_order_size,
                "max_order_size": config.max_order_size,
                "max_position_size": config.max_position_size,
                "auto_rebalance": config.auto_rebalance,
            },
        }
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise InvalidPoolConfigError(pool.id, summarize_validation_error(exc)) from exc


def summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# PoolOnchainState: fetched per cycle, only snapshotted
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PoolOnchainState:
    """Reserves and price of a pool, in one quote convention (token B per token A)."""

    pool_address: str
    token_a_amount: Decimal
    token_b_amount: Decimal
    current_price: Decimal
    liquidity: Decimal = Decimal(0)
    fetched_at: float = field(default_factory=time.time)

    @property
    def current_ratio(self) -> Optional[Decimal]:
        """Value of token A over value of token B; None when token B is empty."""
        if self.token_b_amount == 0:
            return None
        return (self.token_a_amount * self.current_price) / self.token_b_amount


# ---------------------------------------------------------------------------
# RebalanceAction / ExecutionResult: transient decision and outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RebalanceAction:
    type: TradeDirection
    amount: Decimal  # token A units, already clamped
    expected_price: Decimal
    min_received: Decimal
    max_spent: Decimal

    def describe(self) -> str:
        return f"{self.type.value} {self.amount} tokens at {self.expected_price}"


@dataclass(frozen=True)
class ExecutionResult:
    signature: str
    success: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Status projection
# ---------------------------------------------------------------------------

class ErrorEventSummary(BaseModel):
    pool_id: Optional[int] = None
    description: str
    created_at: Optional[datetime] = None


class WorkerStatus(BaseModel):
    """Read-only snapshot consumed by a status endpoint or the CLI."""

    is_running: bool
    last_check: str  # ISO-8601, empty before the first sweep
    active_pools_count: int
    pending_rebalances: int
    last_error: Optional[ErrorEventSummary] = None
