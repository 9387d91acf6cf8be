"""
SQLAlchemy tables for wallet configurations, settlement records and season goals.

Timestamps are unix seconds (Integer). Amounts in settlement-currency base
units are BigInteger; observed native amounts are stored as strings since
wei values exceed 64 bits.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

from backend_eon.database.models import (
    SeasonGoal,
    SettlementRecord,
    SettlementStatus,
    WalletConfiguration,
    canonical_address,
)

Base = declarative_base()

# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------


class WalletConfigurationRow(Base):
    """Donation configuration. Created externally; the watcher only updates last_donation_at."""

    __tablename__ = "wallet_configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    target_address = Column(String(64), nullable=False)
    donation_percent = Column(Integer, nullable=False)
    authorized_contract = Column(String(64), nullable=True)  # null -> default contract
    network = Column(String(32), nullable=False, default="base")
    last_donation_at = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(Integer, nullable=False, index=True)

    def to_model(self, default_contract: str = "") -> WalletConfiguration:
        return WalletConfiguration(
            config_id=self.id,
            wallet_address=canonical_address(self.wallet_address),
            target_address=canonical_address(self.target_address),
            donation_percent=int(self.donation_percent),
            authorized_contract=canonical_address(self.authorized_contract or default_contract),
            network=self.network or "base",
            last_donation_at=self.last_donation_at,
            created_at=self.created_at or 0,
        )


class SettlementRecordRow(Base):
    """One settlement attempt per source transaction. Unique source_tx_hash is the durable dedup barrier."""

    __tablename__ = "settlement_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_tx_hash = Column(String(80), unique=True, nullable=False, index=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    target_address = Column(String(64), nullable=False)
    contract_address = Column(String(64), nullable=False)
    asset_type = Column(String(32), nullable=False)
    original_amount = Column(String(80), nullable=False)
    settlement_amount = Column(BigInteger, nullable=False)
    percent = Column(Integer, nullable=False)
    config_id = Column(Integer, nullable=True)
    observed_at = Column(Integer, nullable=False, index=True)
    status = Column(String(16), nullable=False, default=SettlementStatus.PENDING.value, index=True)
    settlement_tx_hash = Column(String(80), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)

    def to_model(self) -> SettlementRecord:
        return SettlementRecord(
            source_tx_hash=self.source_tx_hash,
            wallet_address=self.wallet_address,
            target_address=self.target_address,
            contract_address=self.contract_address,
            asset_type=self.asset_type,
            original_amount=self.original_amount,
            settlement_amount=int(self.settlement_amount),
            percent=int(self.percent),
            config_id=self.config_id,
            observed_at=self.observed_at,
            status=SettlementStatus(self.status),
            settlement_tx_hash=self.settlement_tx_hash,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class SeasonGoalRow(Base):
    """Season goal per wallet; the most recent row with a goal_amount is the live one."""

    __tablename__ = "season_goals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    goal_amount = Column(BigInteger, nullable=True)
    start_at = Column(Integer, nullable=True)
    end_at = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(Integer, nullable=True)
    notify_id = Column(Integer, nullable=True)  # Farcaster fid
    created_at = Column(Integer, nullable=False, index=True)

    def to_model(self) -> SeasonGoal:
        return SeasonGoal(
            goal_id=self.id,
            wallet_address=self.wallet_address,
            goal_amount=int(self.goal_amount) if self.goal_amount is not None else None,
            start_at=self.start_at,
            end_at=self.end_at,
            active=bool(self.active),
            completed=bool(self.completed),
            created_at=self.created_at,
            completed_at=self.completed_at,
            notify_id=self.notify_id,
        )
