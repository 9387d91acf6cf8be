"""
Per-transaction idempotency gate.

Two layers: a bounded in-memory seen set (set + deque, oldest evicted first)
that short-circuits repeat deliveries cheaply, and the unique constraint on
settlement_records.source_tx_hash, which is authoritative. A hash is only
marked seen once its outcome is terminal (settled, failed, or nothing to
donate); claiming it durably does not mark it.
"""

from __future__ import annotations

from collections import deque

from backend_eon.core.exceptions import DuplicateSettlementError
from backend_eon.database.models import DonationIntent, SettlementStatus
from backend_eon.database.store import Store
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)

DEFAULT_CAPACITY = 5000


class Deduplicator:
    def __init__(self, store: Store, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._store = store
        self._capacity = capacity
        self._seen: set[str] = set()
        self._seen_order: deque[str] = deque()

    def __len__(self) -> int:
        return len(self._seen)

    def seen_recently(self, tx_hash: str) -> bool:
        return tx_hash.lower() in self._seen

    def mark_seen(self, tx_hash: str) -> None:
        """Mark hash seen; evict oldest if over capacity."""
        key = tx_hash.lower()
        if key in self._seen:
            return
        if len(self._seen) >= self._capacity:
            oldest = self._seen_order.popleft()
            self._seen.discard(oldest)
        self._seen.add(key)
        self._seen_order.append(key)

    async def is_handled(self, tx_hash: str) -> bool:
        """True if the hash is in memory or already has a settlement record."""
        if self.seen_recently(tx_hash):
            return True
        try:
            record = await self._store.get_settlement(tx_hash)
        except Exception as e:
            # claim() still enforces uniqueness
            logger.warning("dedup_lookup_failed", tx_hash=tx_hash, error=str(e))
            return False
        if record is not None and record.status is not SettlementStatus.PENDING:
            self.mark_seen(tx_hash)
        return record is not None

    async def claim(self, intent: DonationIntent) -> bool:
        """
        Durably claim intent.source_tx_hash by inserting its pending record.

        Returns False if another delivery already claimed it. Store errors
        other than the uniqueness violation propagate.
        """
        try:
            await self._store.insert_pending_settlement(intent)
        except DuplicateSettlementError:
            logger.info("dedup_duplicate_delivery", tx_hash=intent.source_tx_hash)
            return False
        return True
