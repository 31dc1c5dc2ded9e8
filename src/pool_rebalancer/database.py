"""Async persistence layer via SQLAlchemy (aiosqlite by default).

``PoolStore`` is the single shared mutable resource of the rebalancer. Every
write goes through a session that commits on success and rolls back on error;
``transaction()`` exposes that unit to the worker so that a transaction record
and its event are committed together or not at all.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

import structlog
from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pool_rebalancer.errors import InvalidPoolConfigError, PoolNotFoundError
from pool_rebalancer.models import (
    Base,
    ErrorEventSummary,
    EventType,
    Pool,
    PoolConfig,
    PoolConfigRow,
    PoolEvent,
    PoolStatus,
    RebalanceAction,
    Severity,
    TransactionRecord,
    TransactionStatus,
    summarize_validation_error,
)

logger = structlog.get_logger()

# Columns the worker may write. Strategy parameters are admin-only.
DERIVED_POOL_FIELDS = frozenset(
    {
        "rebalance_needed",
        "token_a_reserve",
        "token_b_reserve",
        "last_price",
        "last_ratio",
        "last_snapshot_at",
    }
)

STRATEGY_FIELDS = frozenset(
    {
        "target_ratio",
        "rebalance_threshold",
        "min_trade_size",
        "max_trade_size",
        "max_slippage",
    }
)

MARKET_MAKING_FIELDS = frozenset(
    {
        "bid_spread",
        "ask_spread",
        "min_order_size",
        "max_order_size",
        "max_position_size",
        "auto_rebalance",
    }
)


def _as_decimal(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    return value


# ---------------------------------------------------------------------------
# Per-pool transactional unit
# ---------------------------------------------------------------------------

class PoolStoreTransaction:
    """Writes staged on one session; committed or rolled back as a whole."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._finished = False

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def insert_transaction_record(
        self,
        *,
        pool_id: int,
        action: RebalanceAction,
        status: TransactionStatus,
        tx_signature: str = "",
        error_message: Optional[str] = None,
    ) -> TransactionRecord:
        record = TransactionRecord(
            pool_id=pool_id,
            action_type="REBALANCE",
            direction=action.type.value,
            amount=action.amount,
            price=action.expected_price,
            min_received=action.min_received,
            max_spent=action.max_spent,
            tx_signature=tx_signature,
            status=status.value,
            error_message=error_message,
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def insert_event(
        self,
        *,
        pool_id: Optional[int],
        event_type: EventType,
        description: str,
        severity: Optional[Severity] = None,
    ) -> PoolEvent:
        if severity is None:
            severity = Severity.ERROR if event_type == EventType.ERROR else Severity.INFO
        event = PoolEvent(
            pool_id=pool_id,
            event_type=event_type.value,
            description=description,
            severity=severity.value,
        )
        self._session.add(event)
        await self._session.flush()
        return event

    async def update_derived_pool_state(self, pool_id: int, **fields: Any) -> None:
        unknown = set(fields) - DERIVED_POOL_FIELDS
        if unknown:
            raise ValueError(f"not a derived pool field: {', '.join(sorted(unknown))}")
        if not fields:
            return
        values = {key: _as_decimal(val) for key, val in fields.items()}
        await self._session.execute(update(Pool).where(Pool.id == pool_id).values(**values))

    async def commit(self) -> None:
        if not self._finished:
            await self._session.commit()
            self._finished = True

    async def rollback(self) -> None:
        if not self._finished:
            await self._session.rollback()
            self._finished = True


# ---------------------------------------------------------------------------
# PoolStore
# ---------------------------------------------------------------------------

class PoolStore:
    """Owns the engine and session factory; one instance per process."""

    def __init__(self, db_url: str) -> None:
        self._db_url = db_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Create engine, session factory, and ensure tables exist."""
        self._engine = create_async_engine(self._db_url, echo=False)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("database_initialized", url=self._db_url)

    async def close(self) -> None:
        """Dispose engine connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("database_closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield an async session with automatic commit / rollback."""
        assert self._session_factory is not None, "Call init() first"
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[PoolStoreTransaction, None]:
        """Open one atomic unit; commit on clean exit unless already finished."""
        assert self._session_factory is not None, "Call init() first"
        async with self._session_factory() as session:
            tx = PoolStoreTransaction(session)
            try:
                yield tx
                await tx.commit()
            except Exception:
                await tx.rollback()
                raise

    # ------------------------------------------------------------------
    # Worker reads / writes
    # ------------------------------------------------------------------

    async def list_eligible_pools(self) -> List[PoolConfig]:
        """Active, enabled, not emergency-stopped pools with a valid config.

        Rows that fail validation are skipped and reported as ERROR events.
        """
        async with self.session() as session:
            result = await session.execute(
                select(Pool, PoolConfigRow)
                .join(PoolConfigRow, PoolConfigRow.pool_id == Pool.id)
                .where(
                    Pool.status == PoolStatus.ACTIVE.value,
                    PoolConfigRow.enabled.is_(True),
                    PoolConfigRow.emergency_stop.is_(False),
                )
                .order_by(Pool.id)
            )
            rows = result.all()

        configs: List[PoolConfig] = []
        for pool, config_row in rows:
            try:
                configs.append(PoolConfig.from_rows(pool, config_row))
            except InvalidPoolConfigError as exc:
                logger.error("invalid_pool_config_skipped", pool_id=pool.id, reason=exc.reason)
                await self.insert_event(
                    pool_id=pool.id,
                    event_type=EventType.ERROR,
                    description=f"Invalid pool config skipped: {exc.reason}",
                )
        return configs

    async def get_pool(self, pool_id: int) -> PoolConfig:
        async with self.session() as session:
            pool, config_row = await self._load_pool(session, pool_id)
        return PoolConfig.from_rows(pool, config_row)

    async def insert_event(
        self,
        *,
        pool_id: Optional[int],
        event_type: EventType,
        description: str,
        severity: Optional[Severity] = None,
    ) -> None:
        """Write a single event in its own transaction."""
        async with self.transaction() as tx:
            await tx.insert_event(
                pool_id=pool_id,
                event_type=event_type,
                description=description,
                severity=severity,
            )

    async def update_derived_pool_state(self, pool_id: int, **fields: Any) -> None:
        async with self.transaction() as tx:
            await tx.update_derived_pool_state(pool_id, **fields)

    # ------------------------------------------------------------------
    # Status / history projections
    # ------------------------------------------------------------------

    async def count_active_pools(self) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Pool)
                .join(PoolConfigRow, PoolConfigRow.pool_id == Pool.id)
                .where(
                    Pool.status == PoolStatus.ACTIVE.value,
                    PoolConfigRow.enabled.is_(True),
                )
            )
            return int(result.scalar_one())

    async def count_pending_rebalances(self) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Pool)
                .join(PoolConfigRow, PoolConfigRow.pool_id == Pool.id)
                .where(
                    Pool.status == PoolStatus.ACTIVE.value,
                    PoolConfigRow.enabled.is_(True),
                    Pool.rebalance_needed.is_(True),
                )
            )
            return int(result.scalar_one())

    async def latest_error_event(self) -> Optional[ErrorEventSummary]:
        async with self.session() as session:
            result = await session.execute(
                select(PoolEvent)
                .where(PoolEvent.event_type == EventType.ERROR.value)
                .order_by(PoolEvent.created_at.desc(), PoolEvent.id.desc())
                .limit(1)
            )
            event = result.scalars().first()
        if event is None:
            return None
        return ErrorEventSummary(
            pool_id=event.pool_id,
            description=event.description,
            created_at=event.created_at,
        )

    async def recent_transactions(
        self, limit: int = 10, pool_id: Optional[int] = None
    ) -> Sequence[TransactionRecord]:
        async with self.session() as session:
            query = select(TransactionRecord).where(TransactionRecord.action_type == "REBALANCE")
            if pool_id is not None:
                query = query.where(TransactionRecord.pool_id == pool_id)
            result = await session.execute(
                query.order_by(TransactionRecord.created_at.desc(), TransactionRecord.id.desc()).limit(limit)
            )
            return result.scalars().all()

    async def recent_events(
        self,
        limit: int = 50,
        pool_id: Optional[int] = None,
        event_type: Optional[EventType] = None,
    ) -> Sequence[PoolEvent]:
        async with self.session() as session:
            query = select(PoolEvent)
            if pool_id is not None:
                query = query.where(PoolEvent.pool_id == pool_id)
            if event_type is not None:
                query = query.where(PoolEvent.event_type == event_type.value)
            result = await session.execute(
                query.order_by(PoolEvent.created_at.desc(), PoolEvent.id.desc()).limit(limit)
            )
            return result.scalars().all()

    # ------------------------------------------------------------------
    # Admin operations (each writes its audit event atomically)
    # ------------------------------------------------------------------

    async def register_pool(
        self,
        *,
        pool_address: str,
        target_ratio: Any,
        rebalance_threshold: Any,
        min_trade_size: Any,
        max_trade_size: Any,
        max_slippage: Any,
        token_a_address: str = "",
        token_b_address: str = "",
        token_a_symbol: str = "",
        token_b_symbol: str = "",
        token_a_decimals: int = 9,
        token_b_decimals: int = 6,
        enabled: bool = False,
    ) -> PoolConfig:
        """Create a pool with its strategy config and a CREATED event."""
        strategy = {
            "target_ratio": _as_decimal(target_ratio),
            "rebalance_threshold": _as_decimal(rebalance_threshold),
            "min_trade_size": _as_decimal(min_trade_size),
            "max_trade_size": _as_decimal(max_trade_size),
            "max_slippage": _as_decimal(max_slippage),
        }
        identity = {
            "pool_address": pool_address,
            "token_a_address": token_a_address,
            "token_b_address": token_b_address,
            "token_a_symbol": token_a_symbol,
            "token_b_symbol": token_b_symbol,
            "token_a_decimals": token_a_decimals,
            "token_b_decimals": token_b_decimals,
        }
        _validate_candidate(pool_address, {"pool_id": 0, **identity, **strategy, "enabled": enabled})

        async with self.transaction() as tx:
            session = tx.session
            pool = Pool(**identity, status=PoolStatus.ACTIVE.value)
            session.add(pool)
            await session.flush()
            session.add(PoolConfigRow(pool_id=pool.id, enabled=enabled, **strategy))
            await tx.insert_event(
                pool_id=pool.id,
                event_type=EventType.CREATED,
                description=f"Pool registered: {token_a_symbol or '?'}/{token_b_symbol or '?'} at {pool_address}",
            )
            pool_id = pool.id

        logger.info("pool_registered", pool_id=pool_id, pool_address=pool_address)
        return await self.get_pool(pool_id)

    async def update_strategy_config(self, pool_id: int, **changes: Any) -> PoolConfig:
        """Validate and apply strategy / market-making changes; writes CONFIG_CHANGED."""
        allowed = STRATEGY_FIELDS | MARKET_MAKING_FIELDS
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidPoolConfigError(pool_id, f"unknown fields: {', '.join(sorted(unknown))}")
        if not changes:
            return await self.get_pool(pool_id)

        changes = {key: _as_decimal(val) for key, val in changes.items()}

        async with self.transaction() as tx:
            session = tx.session
            pool, config_row = await self._load_pool(session, pool_id)
            current = PoolConfig.from_rows(pool, config_row)

            candidate = current.model_dump()
            for key, val in changes.items():
                if key in MARKET_MAKING_FIELDS:
                    candidate["market_making"][key] = val
                else:
                    candidate[key] = val
            _validate_candidate(pool_id, candidate)

            diffs = []
            for key, val in changes.items():
                old = getattr(config_row, key)
                if old != val:
                    diffs.append(f"{key}: {old} -> {val}")
                setattr(config_row, key, val)

            await tx.insert_event(
                pool_id=pool_id,
                event_type=EventType.CONFIG_CHANGED,
                description="Strategy config updated: " + (", ".join(diffs) or "no changes"),
            )

        logger.info("pool_config_updated", pool_id=pool_id, fields=sorted(changes))
        return await self.get_pool(pool_id)

    async def set_enabled(self, pool_id: int, enabled: bool) -> None:
        async with self.transaction() as tx:
            _, config_row = await self._load_pool(tx.session, pool_id)
            config_row.enabled = enabled
            await tx.insert_event(
                pool_id=pool_id,
                event_type=EventType.ENABLED if enabled else EventType.DISABLED,
                description=f"Rebalancing {'enabled' if enabled else 'disabled'}",
            )
        logger.info("pool_enabled_toggled", pool_id=pool_id, enabled=enabled)

    async def set_emergency_stop(self, pool_id: int, stop: bool) -> None:
        async with self.transaction() as tx:
            _, config_row = await self._load_pool(tx.session, pool_id)
            config_row.emergency_stop = stop
            await tx.insert_event(
                pool_id=pool_id,
                event_type=EventType.EMERGENCY_STOP,
                description=f"Emergency stop {'engaged' if stop else 'released'}",
                severity=Severity.WARNING if stop else Severity.INFO,
            )
        logger.warning("pool_emergency_stop_set", pool_id=pool_id, emergency_stop=stop)

    async def deactivate_pool(self, pool_id: int) -> None:
        """Soft delete: the pool stays referenced by its transactions."""
        async with self.transaction() as tx:
            pool, _ = await self._load_pool(tx.session, pool_id)
            pool.status = PoolStatus.INACTIVE.value
            await tx.insert_event(
                pool_id=pool_id,
                event_type=EventType.CONFIG_CHANGED,
                description="Pool deactivated",
            )
        logger.info("pool_deactivated", pool_id=pool_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_pool(session: AsyncSession, pool_id: int) -> tuple[Pool, PoolConfigRow]:
        pool = await session.get(Pool, pool_id)
        config_row = await session.get(PoolConfigRow, pool_id)
        if pool is None or config_row is None:
            raise PoolNotFoundError(f"pool {pool_id} not found")
        return pool, config_row


def _validate_candidate(pool_id: Any, data: Dict[str, Any]) -> None:
    try:
        PoolConfig.model_validate(data)
    except ValidationError as exc:
        raise InvalidPoolConfigError(pool_id, summarize_validation_error(exc)) from exc
