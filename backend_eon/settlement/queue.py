"""
Single-flight settlement queue.

FIFO of DonationIntents drained by at most one coroutine at a time. A drain
requested while another is running does not start a second drain; it sets a
flag and the running drain makes one more pass once its current batch
resolves. Intents that arrive mid-drain therefore wait for the next pass and
never end up in two batches.
"""

from __future__ import annotations

from collections import deque
from typing import Awaitable, Protocol

from backend_eon.core.results import DrainReport, GroupOutcome
from backend_eon.database.models import DonationIntent
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)


class BatchSettler(Protocol):
    def settle(self, batch: list[DonationIntent]) -> Awaitable[list[GroupOutcome]]: ...


class SettlementQueue:
    def __init__(self, settler: BatchSettler) -> None:
        self._settler = settler
        self._items: deque[DonationIntent] = deque()
        self._queued: set[str] = set()
        self._in_flight: set[str] = set()
        self._draining = False
        self._rerun = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def draining(self) -> bool:
        return self._draining

    def owned(self) -> set[str]:
        """Source hashes queued or in the batch being settled."""
        return self._queued | self._in_flight

    def enqueue(self, intent: DonationIntent) -> bool:
        """Append intent. False if the same source transaction is already queued."""
        key = intent.source_tx_hash.lower()
        if key in self._queued:
            return False
        self._items.append(intent)
        self._queued.add(key)
        logger.info(
            "donation_queued",
            tx_hash=intent.source_tx_hash,
            wallet_id=intent.wallet_address,
            amount=intent.settlement_amount,
            queue_depth=len(self._items),
        )
        return True

    def _take_all(self) -> list[DonationIntent]:
        batch = list(self._items)
        self._items.clear()
        self._queued.clear()
        return batch

    async def drain(self) -> DrainReport:
        """
        Settle everything queued. Coalesces with an in-flight drain.

        Returns the report of the passes run by this call; a coalesced call
        returns immediately with coalesced=True.
        """
        if self._draining:
            self._rerun = True
            logger.debug("settlement_drain_coalesced", queue_depth=len(self._items))
            return DrainReport(coalesced=True)

        self._draining = True
        report = DrainReport()
        try:
            while True:
                self._rerun = False
                batch = self._take_all()
                if batch:
                    report.passes += 1
                    report.intents += len(batch)
                    self._in_flight = {i.source_tx_hash.lower() for i in batch}
                    try:
                        report.groups.extend(await self._settler.settle(batch))
                    except Exception as e:
                        logger.exception(
                            "settlement_drain_error", batch_size=len(batch), error=str(e)
                        )
                    finally:
                        self._in_flight = set()
                if not self._rerun:
                    break
        finally:
            self._draining = False
        if report.intents:
            logger.info(
                "settlement_drain_done",
                passes=report.passes,
                intents=report.intents,
                settled=len(report.settled),
                unsettled=len(report.unsettled),
            )
        return report
