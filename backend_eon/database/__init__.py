"""
Persistence layer: wallet configurations, settlement ledger, season goals.

Async SQLAlchemy; SQLite (aiosqlite) by default, PostgreSQL via asyncpg.
"""

from backend_eon.database.models import (
    AssetType,
    DonationIntent,
    SeasonGoal,
    SettlementRecord,
    SettlementStatus,
    WalletConfiguration,
    canonical_address,
)
from backend_eon.database.store import Store

__all__ = [
    "AssetType",
    "DonationIntent",
    "SeasonGoal",
    "SettlementRecord",
    "SettlementStatus",
    "Store",
    "WalletConfiguration",
    "canonical_address",
]
