"""
Watcher service: detection → dedup → donation → season cap → queue → settlement.

All watcher state (registry, dedup set, queue) lives on one WatcherContext
owned by one WatcherService. Periodic work runs on independent timers
(registry refresh, queue drain, reconciliation poll, season sweep, price
refresh, stale-pending recovery); each is guarded so a slow run is skipped rather than overlapped.
Handler errors are isolated per event; the loop never crashes.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from backend_eon.chain.client import EonChain
from backend_eon.config.settings import Settings
from backend_eon.core.results import DrainReport
from backend_eon.database.models import DonationIntent, SettlementRecord, SettlementStatus
from backend_eon.database.store import Store
from backend_eon.donation.compute import quote_transfer
from backend_eon.donation.season_goals import SeasonGoalAdjuster
from backend_eon.eon_logging import get_logger
from backend_eon.pricing.oracle import PriceOracle
from backend_eon.settlement.queue import SettlementQueue
from backend_eon.watcher.dedup import Deduplicator
from backend_eon.watcher.events import TransferEvent
from backend_eon.watcher.registry import WalletRegistry
from backend_eon.watcher.source import EventSource, PushEventSource

logger = get_logger(__name__)

MIN_INTERVAL_SEC = 1.0

RETRY_REQUEUED = "requeued"
RETRY_SETTLED = "settled"


@dataclass
class WatcherConfig:
    """
    Timers and token allow-list for the watcher.

    Intervals are clamped to MIN_INTERVAL_SEC.
    """

    settlement_token: str
    wrapped_native_token: str = ""
    registry_refresh_sec: float = 30.0
    queue_drain_sec: float = 10.0
    reconcile_poll_sec: float = 15.0
    season_sweep_sec: float = 21600.0
    price_refresh_sec: float = 60.0
    pending_stale_sec: int = 900
    pending_recovery_sec: float = 60.0

    def __post_init__(self) -> None:
        self.settlement_token = self.settlement_token.lower()
        self.wrapped_native_token = self.wrapped_native_token.lower()
        for name in (
            "registry_refresh_sec",
            "queue_drain_sec",
            "reconcile_poll_sec",
            "season_sweep_sec",
            "price_refresh_sec",
            "pending_recovery_sec",
        ):
            setattr(self, name, max(MIN_INTERVAL_SEC, float(getattr(self, name))))

    @classmethod
    def from_settings(cls, settings: Settings) -> "WatcherConfig":
        return cls(
            settlement_token=settings.settlement_token,
            wrapped_native_token=settings.wrapped_native_token,
            registry_refresh_sec=settings.registry_refresh_sec,
            queue_drain_sec=settings.queue_drain_sec,
            reconcile_poll_sec=settings.reconcile_poll_sec,
            season_sweep_sec=settings.season_sweep_sec,
            price_refresh_sec=settings.price_refresh_sec,
            pending_stale_sec=settings.pending_stale_sec,
            pending_recovery_sec=settings.pending_recovery_sec,
        )


@dataclass
class WatcherContext:
    """Everything one watcher instance owns. Passed by reference; no module-level state."""

    config: WatcherConfig
    store: Store
    chain: EonChain
    oracle: PriceOracle
    registry: WalletRegistry
    dedup: Deduplicator
    adjuster: SeasonGoalAdjuster
    queue: SettlementQueue
    source: EventSource


class WatcherService:
    def __init__(self, ctx: WatcherContext, clock: Callable[[], float] = time.time) -> None:
        self.ctx = ctx
        self._clock = clock
        self._in_flight: set[str] = set()
        self._started = False
        ctx.source.bind(self.handle_transfer)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def handle_transfer(self, event: TransferEvent) -> DonationIntent | None:
        """
        Run one transfer through the pipeline. Returns the queued intent, or
        None when nothing is to be donated (unwatched, duplicate, ignored
        token, goal already met) or a stage failed.
        """
        ctx = self.ctx
        if event.amount <= 0:
            logger.debug("transfer_zero_value", tx_hash=event.tx_hash)
            return None
        config = ctx.registry.get(event.recipient)
        if config is None:
            return None
        if await ctx.dedup.is_handled(event.tx_hash):
            logger.debug("transfer_already_handled", tx_hash=event.tx_hash, channel=event.channel)
            return None

        try:
            quote = await quote_transfer(
                event,
                config,
                ctx.oracle,
                settlement_token=ctx.config.settlement_token,
                wrapped_native_token=ctx.config.wrapped_native_token,
            )
        except Exception as e:
            logger.exception("donation_quote_failed", tx_hash=event.tx_hash, error=str(e))
            return None
        if quote is None or quote.donation_amount <= 0:
            return None

        # evaluate, claim and complete under one wallet lock; a repeat delivery
        # must find the claim, not a goal this delivery already completed
        async with ctx.adjuster.lock_for(config.wallet_address):
            adjustment = await ctx.adjuster.evaluate(config.wallet_address, quote.donation_amount)
            reached = adjustment.goal_reached_now and adjustment.season_id is not None
            if adjustment.final_amount <= 0:
                logger.info(
                    "donation_skipped_goal_reached",
                    tx_hash=event.tx_hash,
                    wallet_id=config.wallet_address,
                    season_id=adjustment.season_id,
                )
                if reached:
                    await ctx.adjuster.complete_quietly(adjustment.season_id)
                ctx.dedup.mark_seen(event.tx_hash)
                return None

            intent = DonationIntent(
                source_tx_hash=event.tx_hash,
                wallet_address=config.wallet_address,
                asset_type=quote.asset_type,
                original_amount=quote.original_amount,
                settlement_amount=adjustment.final_amount,
                percent=quote.percent,
                target_address=config.target_address,
                authorized_contract=config.authorized_contract,
                config_id=config.config_id,
                observed_at=event.block_time or int(self._clock()),
                season_id=adjustment.season_id if reached else None,
            )
            try:
                claimed = await ctx.dedup.claim(intent)
            except Exception as e:
                logger.exception("donation_claim_failed", tx_hash=event.tx_hash, error=str(e))
                return None
            if not claimed:
                return None
            if reached:
                await ctx.adjuster.complete_quietly(adjustment.season_id)
        ctx.queue.enqueue(intent)
        return intent

    async def request_drain(self) -> DrainReport:
        return await self.ctx.queue.drain()

    async def ingest_webhook(self, payload: Any) -> int:
        """Feed a webhook body to the push source. Returns the number of events."""
        source = self.ctx.source
        if not isinstance(source, PushEventSource):
            logger.info("webhook_ignored_poll_mode")
            return 0
        events = await source.ingest(payload)
        return len(events)

    # -------------------------------------------------------------------------
    # Recovery and reconciliation
    # -------------------------------------------------------------------------

    async def recover_pending(self) -> list[str]:
        """
        Retry pending records older than pending_stale_sec that this process
        does not hold in its queue. They are failed first (keeping any attached
        donate hash) and then go through the same path as reprocess_failed, so
        none stays pending for the life of the process. Returns their hashes.
        """
        ctx = self.ctx
        now = int(self._clock())
        hashes = await ctx.store.fail_stale_pending(
            now - ctx.config.pending_stale_sec, now, exclude=ctx.queue.owned()
        )
        for source_tx_hash in hashes:
            record = await ctx.store.get_settlement(source_tx_hash)
            if record is not None:
                await self._retry_record(record)
        return hashes

    async def _retry_record(self, record: SettlementRecord) -> str | None:
        """
        Settle a failed record again. A record whose donate transaction was
        mined is marked success; one whose transaction is still in the mempool
        is left failed for a later pass. Returns RETRY_REQUEUED, RETRY_SETTLED
        or None.
        """
        ctx = self.ctx
        if record.settlement_tx_hash:
            try:
                receipt = await ctx.chain.get_receipt(record.settlement_tx_hash)
                in_mempool = receipt is None and await ctx.chain.is_pending(record.settlement_tx_hash)
            except Exception as e:
                logger.warning(
                    "reprocess_receipt_lookup_failed",
                    tx_hash=record.source_tx_hash,
                    settlement_tx_hash=record.settlement_tx_hash,
                    error=str(e),
                )
                return None
            if receipt is not None and int(receipt.get("status", 0)) == 1:
                await ctx.store.mark_settlement_success(
                    [record.source_tx_hash], record.settlement_tx_hash, int(self._clock())
                )
                ctx.dedup.mark_seen(record.source_tx_hash)
                logger.info(
                    "reprocess_found_mined",
                    tx_hash=record.source_tx_hash,
                    settlement_tx_hash=record.settlement_tx_hash,
                )
                return RETRY_SETTLED
            if in_mempool:
                logger.info(
                    "reprocess_tx_still_pending",
                    tx_hash=record.source_tx_hash,
                    settlement_tx_hash=record.settlement_tx_hash,
                )
                return None
        if not await ctx.store.reset_failed_settlement(record.source_tx_hash, int(self._clock())):
            return None
        if ctx.queue.enqueue(record.to_intent()):
            return RETRY_REQUEUED
        return None

    async def reprocess_failed(self, limit: int = 100) -> list[str]:
        """Re-enqueue failed settlements; see _retry_record. Returns the requeued hashes."""
        requeued: list[str] = []
        for record in await self.ctx.store.list_failed_settlements(limit):
            if await self._retry_record(record) == RETRY_REQUEUED:
                requeued.append(record.source_tx_hash)
        logger.info("reprocess_failed_done", requeued=len(requeued))
        return requeued

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Init store, recover interrupted settlements, load registry and price."""
        ctx = self.ctx
        await ctx.store.init()
        await self.recover_pending()
        await ctx.registry.refresh()
        await ctx.oracle.refresh()
        self._started = True
        logger.info(
            "watcher_started",
            wallet_count=len(ctx.registry),
            source=type(ctx.source).__name__,
        )

    async def _guarded(self, name: str, fn: Callable[[], Awaitable[Any]]) -> None:
        if name in self._in_flight:
            logger.debug("watcher_task_skipped_overlap", task=name)
            return
        self._in_flight.add(name)
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("watcher_task_failed", task=name, error=str(e))
        finally:
            self._in_flight.discard(name)

    async def _timer(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Awaitable[Any]],
        stop_event: asyncio.Event,
    ) -> None:
        while not stop_event.is_set():
            await self._guarded(name, fn)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run(self, stop_event: asyncio.Event) -> None:
        """Start (if needed) and run all timers until stop_event is set."""
        if not self._started:
            await self.start()
        cfg = self.ctx.config
        timers = [
            ("registry_refresh", cfg.registry_refresh_sec, self.ctx.registry.refresh),
            ("queue_drain", cfg.queue_drain_sec, self.request_drain),
            ("reconcile", cfg.reconcile_poll_sec, self.ctx.source.reconcile),
            ("season_sweep", cfg.season_sweep_sec, self.ctx.adjuster.sweep),
            ("price_refresh", cfg.price_refresh_sec, self.ctx.oracle.refresh),
            ("pending_recovery", cfg.pending_recovery_sec, self.recover_pending),
        ]
        tasks = [
            asyncio.create_task(self._timer(name, interval, fn, stop_event), name=name)
            for name, interval, fn in timers
        ]
        try:
            await stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if len(self.ctx.queue):
                logger.warning("watcher_stopped_with_queued", queued=len(self.ctx.queue))
            logger.info("watcher_stopped")

    def health(self) -> dict[str, Any]:
        ctx = self.ctx
        return {
            "status": "ok" if self._started else "starting",
            "source": type(ctx.source).__name__,
            "watched_wallets": len(ctx.registry),
            "queue_depth": len(ctx.queue),
            "draining": ctx.queue.draining,
            "dedup_size": len(ctx.dedup),
            "price": ctx.oracle.status(),
            "running_tasks": sorted(self._in_flight),
        }

    async def settlement_counts(self) -> dict[str, int]:
        counts = await self.ctx.store.count_settlements_by_status()
        return {s.value: counts.get(s.value, 0) for s in SettlementStatus}
