"""
Wire a WatcherService from Settings.

Validates required settings here (not at import) and builds every
collaborator once, in dependency order.
"""

from __future__ import annotations

from backend_eon.agent_worker.service import WatcherConfig, WatcherContext, WatcherService
from backend_eon.chain.client import EonChain
from backend_eon.config.env import mask_url
from backend_eon.config.settings import EVENT_SOURCE_PUSH, Settings
from backend_eon.database.store import Store
from backend_eon.donation.season_goals import SeasonGoalAdjuster
from backend_eon.eon_logging import get_logger
from backend_eon.notifications.neynar import NeynarNotifier
from backend_eon.pricing.oracle import PriceOracle
from backend_eon.settlement.queue import SettlementQueue
from backend_eon.settlement.retry import RetryPolicy
from backend_eon.settlement.submitter import ChainSubmitter
from backend_eon.watcher.dedup import Deduplicator
from backend_eon.watcher.registry import WalletRegistry
from backend_eon.watcher.source import EventSource, PollingEventSource, PushEventSource

logger = get_logger(__name__)


def build_context(settings: Settings) -> WatcherContext:
    settings.require_chain()
    config = WatcherConfig.from_settings(settings)
    store = Store(settings.database_url)
    chain = EonChain(
        settings.rpc_url,
        settings.operator_private_key,
        receipt_timeout_sec=settings.receipt_timeout_sec,
    )
    oracle = PriceOracle(
        stale_after_sec=settings.price_stale_sec,
        fallback_price=settings.fallback_native_price,
        native_decimals=settings.native_decimals,
        settlement_decimals=settings.settlement_decimals,
    )
    notifier = NeynarNotifier(settings.neynar_api_key, settings.notification_target_url)
    registry = WalletRegistry(store, default_contract=settings.default_contract)
    dedup = Deduplicator(store, capacity=settings.dedup_capacity)
    adjuster = SeasonGoalAdjuster(store, notifier)
    submitter = ChainSubmitter(
        chain,
        store,
        settings.settlement_token,
        policy=RetryPolicy(
            attempts=settings.retry_attempts, base_delay_sec=settings.retry_base_delay_sec
        ),
        registry=registry,
        adjuster=adjuster,
        dedup=dedup,
    )
    queue = SettlementQueue(submitter)

    tokens = [t for t in (settings.settlement_token, settings.wrapped_native_token) if t]
    poller = PollingEventSource(
        chain, registry, tokens, max_blocks_per_tick=settings.max_blocks_per_poll
    )
    source: EventSource = poller
    if settings.event_source_mode == EVENT_SOURCE_PUSH:
        source = PushEventSource(backstop=poller)

    logger.info(
        "watcher_context_built",
        rpc_url=mask_url(settings.rpc_url),
        operator=chain.operator,
        source=settings.event_source_mode,
        default_contract=settings.default_contract,
    )
    return WatcherContext(
        config=config,
        store=store,
        chain=chain,
        oracle=oracle,
        registry=registry,
        dedup=dedup,
        adjuster=adjuster,
        queue=queue,
        source=source,
    )


def build_service(settings: Settings) -> WatcherService:
    return WatcherService(build_context(settings))
