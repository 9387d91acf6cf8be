"""
Async SQLAlchemy store: wallet configurations, settlement ledger, season goals.

DATABASE_URL selects the backend (sqlite+aiosqlite by default, PostgreSQL via
asyncpg). Every public method opens its own session and commits or rolls back
before returning, so no session outlives a call. The unique constraint on
settlement_records.source_tx_hash is the durable idempotency barrier; a
violation surfaces as DuplicateSettlementError.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from backend_eon.core.exceptions import DuplicateSettlementError
from backend_eon.database.models import (
    DonationIntent,
    SeasonGoal,
    SettlementRecord,
    SettlementStatus,
    WalletConfiguration,
    canonical_address,
)
from backend_eon.database.tables import (
    Base,
    SeasonGoalRow,
    SettlementRecordRow,
    WalletConfigurationRow,
)
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)

INTERRUPTED_ERROR = "interrupted before settlement"


def _now() -> int:
    return int(time.time())


def async_database_url(url: str) -> str:
    """Map plain driver URLs to their async drivers (sqlite -> aiosqlite, postgresql -> asyncpg)."""
    url = url.strip()
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _redact(url: str) -> str:
    return url.split("?")[0].split("@")[-1].split("//")[-1]


class Store:
    """Durable state for the watcher. Safe to share across tasks on one event loop."""

    def __init__(self, url: str) -> None:
        self._url = async_database_url(url)
        if self._url.startswith("sqlite"):
            # fresh connection per session; lets each asyncio.run() own its connections
            self._engine: AsyncEngine = create_async_engine(self._url, poolclass=NullPool)
        else:
            self._engine = create_async_engine(self._url, pool_pre_ping=True)
        self._sessions = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )

    @property
    def url(self) -> str:
        return self._url

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[AsyncSession]:
        """Single session. Commits on success, rolls back on error."""
        session = self._sessions()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init(self) -> None:
        """Create tables if they do not exist. Safe to call on every startup."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("store_init_db", url=_redact(self._url))
        except Exception as e:
            logger.exception("store_init_db_failed", error=str(e))
            raise

    async def close(self) -> None:
        await self._engine.dispose()

    # -------------------------------------------------------------------------
    # Wallet configurations
    # -------------------------------------------------------------------------

    async def add_configuration(
        self,
        wallet_address: str,
        target_address: str,
        donation_percent: int,
        *,
        authorized_contract: str | None = None,
        network: str = "base",
        active: bool = True,
        created_at: int | None = None,
    ) -> int:
        """Insert a configuration row and return its id. Used by tooling and tests."""
        async with self._session_scope() as session:
            row = WalletConfigurationRow(
                wallet_address=canonical_address(wallet_address),
                target_address=canonical_address(target_address),
                donation_percent=donation_percent,
                authorized_contract=canonical_address(authorized_contract) or None,
                network=network,
                active=active,
                created_at=created_at if created_at is not None else _now(),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def list_active_configurations(self, default_contract: str = "") -> list[WalletConfiguration]:
        """
        Active configurations, newest first (created_at desc, id desc).

        Rows that cannot be converted are logged and skipped. Callers pick the
        first configuration per wallet.
        """
        async with self._session_scope() as session:
            result = await session.execute(
                select(WalletConfigurationRow)
                .where(WalletConfigurationRow.active.is_(True))
                .order_by(WalletConfigurationRow.created_at.desc(), WalletConfigurationRow.id.desc())
            )
            rows = result.scalars().all()
            configs: list[WalletConfiguration] = []
            for row in rows:
                try:
                    configs.append(row.to_model(default_contract))
                except (TypeError, ValueError) as e:
                    logger.warning("wallet_configuration_unreadable", config_id=row.id, error=str(e))
            return configs

    async def touch_last_donation(self, config_ids: Iterable[int], at: int | None = None) -> int:
        ids = sorted({i for i in config_ids if i})
        if not ids:
            return 0
        at = at if at is not None else _now()
        async with self._session_scope() as session:
            result = await session.execute(
                update(WalletConfigurationRow)
                .where(WalletConfigurationRow.id.in_(ids))
                .values(last_donation_at=at)
            )
            return result.rowcount or 0

    # -------------------------------------------------------------------------
    # Settlement ledger
    # -------------------------------------------------------------------------

    async def get_settlement(self, source_tx_hash: str) -> SettlementRecord | None:
        async with self._session_scope() as session:
            result = await session.execute(
                select(SettlementRecordRow).where(
                    SettlementRecordRow.source_tx_hash == source_tx_hash.lower()
                )
            )
            row = result.scalars().first()
            return row.to_model() if row else None

    async def insert_pending_settlement(
        self, intent: DonationIntent, now: int | None = None
    ) -> SettlementRecord:
        """
        Create the pending record for intent.

        Raises DuplicateSettlementError if a record for the same source
        transaction already exists, whatever its status.
        """
        now = now if now is not None else _now()
        source = intent.source_tx_hash.lower()
        try:
            async with self._session_scope() as session:
                row = SettlementRecordRow(
                    source_tx_hash=source,
                    wallet_address=intent.wallet_address,
                    target_address=intent.target_address,
                    contract_address=intent.authorized_contract,
                    asset_type=intent.asset_type.value,
                    original_amount=str(intent.original_amount),
                    settlement_amount=intent.settlement_amount,
                    percent=intent.percent,
                    config_id=intent.config_id,
                    observed_at=intent.observed_at,
                    status=SettlementStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                await session.flush()
                record = row.to_model()
        except IntegrityError:
            logger.info("settlement_already_recorded", tx_hash=source)
            raise DuplicateSettlementError(source) from None
        logger.info(
            "settlement_pending",
            tx_hash=source,
            wallet_id=intent.wallet_address,
            amount=intent.settlement_amount,
        )
        return record

    async def _set_status(
        self,
        source_tx_hashes: Iterable[str],
        status: SettlementStatus,
        *,
        settlement_tx_hash: str | None,
        error: str | None,
        now: int | None,
    ) -> int:
        hashes = sorted({h.lower() for h in source_tx_hashes})
        if not hashes:
            return 0
        now = now if now is not None else _now()
        values: dict = {"status": status.value, "error": error, "updated_at": now}
        # never clear a hash attached before broadcast
        if settlement_tx_hash is not None:
            values["settlement_tx_hash"] = settlement_tx_hash
        async with self._session_scope() as session:
            result = await session.execute(
                update(SettlementRecordRow)
                .where(SettlementRecordRow.source_tx_hash.in_(hashes))
                .values(**values)
            )
            return result.rowcount or 0

    async def mark_settlement_success(
        self, source_tx_hashes: Iterable[str], settlement_tx_hash: str, now: int | None = None
    ) -> int:
        return await self._set_status(
            source_tx_hashes,
            SettlementStatus.SUCCESS,
            settlement_tx_hash=settlement_tx_hash,
            error=None,
            now=now,
        )

    async def mark_settlement_failed(
        self,
        source_tx_hashes: Iterable[str],
        error: str,
        now: int | None = None,
        *,
        settlement_tx_hash: str | None = None,
    ) -> int:
        return await self._set_status(
            source_tx_hashes,
            SettlementStatus.FAILED,
            settlement_tx_hash=settlement_tx_hash,
            error=error[:2000],
            now=now,
        )

    async def attach_settlement_tx(
        self, source_tx_hashes: Iterable[str], settlement_tx_hash: str, now: int | None = None
    ) -> int:
        """
        Record the signed donate hash on pending records before it is broadcast,
        so a record that never reaches a terminal write still names its transaction.
        """
        hashes = sorted({h.lower() for h in source_tx_hashes})
        if not hashes:
            return 0
        now = now if now is not None else _now()
        async with self._session_scope() as session:
            result = await session.execute(
                update(SettlementRecordRow)
                .where(
                    SettlementRecordRow.source_tx_hash.in_(hashes),
                    SettlementRecordRow.status == SettlementStatus.PENDING.value,
                )
                .values(settlement_tx_hash=settlement_tx_hash, updated_at=now)
            )
            return result.rowcount or 0

    async def sum_settled_amount(self, wallet_address: str, start: int, end: int) -> int:
        """Sum of settlement_amount over successful records for wallet with observed_at in [start, end]."""
        async with self._session_scope() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(SettlementRecordRow.settlement_amount), 0)).where(
                    SettlementRecordRow.wallet_address == canonical_address(wallet_address),
                    SettlementRecordRow.status == SettlementStatus.SUCCESS.value,
                    SettlementRecordRow.observed_at >= start,
                    SettlementRecordRow.observed_at <= end,
                )
            )
            return int(result.scalar_one() or 0)

    async def fail_stale_pending(
        self, older_than: int, now: int | None = None, *, exclude: Iterable[str] = ()
    ) -> list[str]:
        """
        Move pending records last updated before older_than to failed, keeping
        any attached settlement tx hash. Hashes in exclude are still owned by a
        live queue and are left alone. Returns the source hashes moved.
        """
        now = now if now is not None else _now()
        owned = {h.lower() for h in exclude}
        async with self._session_scope() as session:
            result = await session.execute(
                select(SettlementRecordRow.source_tx_hash).where(
                    SettlementRecordRow.status == SettlementStatus.PENDING.value,
                    SettlementRecordRow.updated_at < older_than,
                )
            )
            hashes = [h for h in result.scalars().all() if h not in owned]
            if hashes:
                await session.execute(
                    update(SettlementRecordRow)
                    .where(
                        SettlementRecordRow.source_tx_hash.in_(hashes),
                        SettlementRecordRow.status == SettlementStatus.PENDING.value,
                    )
                    .values(
                        status=SettlementStatus.FAILED.value,
                        error=INTERRUPTED_ERROR,
                        updated_at=now,
                    )
                )
        if hashes:
            logger.warning("settlement_stale_pending_failed", count=len(hashes))
        return hashes

    async def list_failed_settlements(self, limit: int = 100) -> list[SettlementRecord]:
        async with self._session_scope() as session:
            result = await session.execute(
                select(SettlementRecordRow)
                .where(SettlementRecordRow.status == SettlementStatus.FAILED.value)
                .order_by(SettlementRecordRow.observed_at.asc(), SettlementRecordRow.id.asc())
                .limit(limit)
            )
            return [row.to_model() for row in result.scalars().all()]

    async def reset_failed_settlement(self, source_tx_hash: str, now: int | None = None) -> bool:
        """failed -> pending, clearing the error. False if the record is not failed."""
        now = now if now is not None else _now()
        async with self._session_scope() as session:
            result = await session.execute(
                update(SettlementRecordRow)
                .where(
                    SettlementRecordRow.source_tx_hash == source_tx_hash.lower(),
                    SettlementRecordRow.status == SettlementStatus.FAILED.value,
                )
                .values(
                    status=SettlementStatus.PENDING.value,
                    error=None,
                    settlement_tx_hash=None,
                    updated_at=now,
                )
            )
            return (result.rowcount or 0) == 1

    async def count_settlements_by_status(self) -> dict[str, int]:
        async with self._session_scope() as session:
            result = await session.execute(
                select(SettlementRecordRow.status, func.count()).group_by(SettlementRecordRow.status)
            )
            return {status: int(count) for status, count in result.all()}

    # -------------------------------------------------------------------------
    # Season goals
    # -------------------------------------------------------------------------

    async def add_season_goal(
        self,
        wallet_address: str,
        goal_amount: int | None,
        *,
        start_at: int | None = None,
        end_at: int | None = None,
        notify_id: int | None = None,
        created_at: int | None = None,
    ) -> int:
        async with self._session_scope() as session:
            row = SeasonGoalRow(
                wallet_address=canonical_address(wallet_address),
                goal_amount=goal_amount,
                start_at=start_at,
                end_at=end_at,
                active=True,
                completed=False,
                notify_id=notify_id,
                created_at=created_at if created_at is not None else _now(),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def latest_season_goal(self, wallet_address: str) -> SeasonGoal | None:
        """Most recently created goal for wallet with a non-null goal_amount."""
        async with self._session_scope() as session:
            result = await session.execute(
                select(SeasonGoalRow)
                .where(
                    func.lower(SeasonGoalRow.wallet_address) == canonical_address(wallet_address),
                    SeasonGoalRow.goal_amount.is_not(None),
                )
                .order_by(SeasonGoalRow.created_at.desc(), SeasonGoalRow.id.desc())
                .limit(1)
            )
            row = result.scalars().first()
            return row.to_model() if row else None

    async def get_season_goal(self, goal_id: int) -> SeasonGoal | None:
        async with self._session_scope() as session:
            row = await session.get(SeasonGoalRow, goal_id)
            return row.to_model() if row else None

    async def complete_season_goal(self, goal_id: int, now: int | None = None) -> bool:
        """
        Mark goal completed and inactive, only if not already completed.

        Returns True only for the call that performed the transition.
        """
        now = now if now is not None else _now()
        async with self._session_scope() as session:
            result = await session.execute(
                update(SeasonGoalRow)
                .where(SeasonGoalRow.id == goal_id, SeasonGoalRow.completed.is_(False))
                .values(completed=True, active=False, completed_at=now)
            )
            return (result.rowcount or 0) == 1

    async def list_goal_wallets(self) -> list[str]:
        """Wallets with an active, uncompleted goal."""
        async with self._session_scope() as session:
            result = await session.execute(
                select(func.lower(SeasonGoalRow.wallet_address))
                .where(
                    SeasonGoalRow.goal_amount.is_not(None),
                    SeasonGoalRow.active.is_(True),
                    SeasonGoalRow.completed.is_(False),
                )
                .distinct()
            )
            return sorted(result.scalars().all())
