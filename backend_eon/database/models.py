"""
Domain models for database entities.

Wallet configurations, donation intents, settlement records and season goals.
Used by the Store and the pipeline; no ORM coupling so callers never hold
live sessions.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class AssetType(str, enum.Enum):
    NATIVE = "native"
    SETTLEMENT = "settlement"
    WRAPPED_NATIVE = "wrapped_native"


def canonical_address(address: str | None) -> str:
    """Lowercase, 0x-prefixed, stripped. Empty string for empty input."""
    value = (address or "").strip().lower()
    if not value:
        return ""
    if not value.startswith("0x"):
        value = "0x" + value
    return value


@dataclass(frozen=True)
class WalletConfiguration:
    """Active donation configuration for one watched wallet."""

    config_id: int
    wallet_address: str
    """Canonical lowercase address; the routing key for incoming transfers."""
    target_address: str
    donation_percent: int
    """1–100."""
    authorized_contract: str
    network: str = "base"
    last_donation_at: int | None = None
    created_at: int = 0


@dataclass(frozen=True)
class DonationIntent:
    """
    One donation to settle, derived from one observed transfer.

    settlement_amount is already goal-adjusted when the intent is enqueued.
    """

    source_tx_hash: str
    wallet_address: str
    asset_type: AssetType
    original_amount: int
    """Observed transfer amount in the asset's base units."""
    settlement_amount: int
    """Donation in settlement-currency base units."""
    percent: int
    target_address: str
    authorized_contract: str
    config_id: int
    observed_at: int
    """Unix seconds of the source block (or first sight when unknown)."""
    season_id: int | None = None
    """Season goal completed by this intent, if any."""


@dataclass
class SettlementRecord:
    """Durable settlement attempt, unique on source_tx_hash."""

    source_tx_hash: str
    wallet_address: str
    target_address: str
    contract_address: str
    asset_type: str
    original_amount: str
    settlement_amount: int
    percent: int
    config_id: int | None
    observed_at: int
    status: SettlementStatus
    settlement_tx_hash: str | None = None
    error: str | None = None
    created_at: int | None = None
    updated_at: int | None = None

    def to_intent(self) -> DonationIntent:
        return DonationIntent(
            source_tx_hash=self.source_tx_hash,
            wallet_address=self.wallet_address,
            asset_type=AssetType(self.asset_type),
            original_amount=int(self.original_amount),
            settlement_amount=self.settlement_amount,
            percent=self.percent,
            target_address=self.target_address,
            authorized_contract=self.contract_address,
            config_id=self.config_id or 0,
            observed_at=self.observed_at,
        )

    def to_dict(self) -> dict:
        return {
            "source_tx_hash": self.source_tx_hash,
            "wallet_address": self.wallet_address,
            "target_address": self.target_address,
            "contract_address": self.contract_address,
            "asset_type": self.asset_type,
            "original_amount": self.original_amount,
            "settlement_amount": self.settlement_amount,
            "percent": self.percent,
            "config_id": self.config_id,
            "observed_at": self.observed_at,
            "status": self.status.value,
            "settlement_tx_hash": self.settlement_tx_hash,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class SeasonGoal:
    """Time-boxed cumulative donation goal for one wallet."""

    goal_id: int
    wallet_address: str
    goal_amount: int | None
    """Settlement-currency base units; None means no goal set."""
    start_at: int | None
    end_at: int | None
    active: bool
    completed: bool
    created_at: int
    completed_at: int | None = None
    notify_id: int | None = None
    """Push-notification recipient (Farcaster fid)."""

    def window(self, now: int) -> tuple[int, int]:
        """(start, end) in unix seconds: explicit dates, else creation time and now."""
        start = self.start_at if self.start_at is not None else self.created_at
        end = self.end_at if self.end_at is not None else now
        return start, end
