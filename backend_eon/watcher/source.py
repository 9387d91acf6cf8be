"""
Event sources: where TransferEvents come from.

One interface, two backends:
- PollingEventSource scans new blocks (native transfers to watched wallets)
  and Transfer logs of allow-listed tokens, capped at max_blocks_per_tick
  blocks per reconcile() call.
- PushEventSource accepts normalized webhook bodies via ingest() and can
  carry a PollingEventSource as its reconciliation backstop.

Delivery is at-least-once: the same transaction may arrive through both the
native and the token channel, and a block may be rescanned after an error.
The Deduplicator downstream absorbs repeats.
"""

from __future__ import annotations

import abc
from typing import Any, Awaitable, Callable, Iterable

from backend_eon.chain.abi import decode_transfer_log, to_hex, to_int
from backend_eon.chain.client import EonChain
from backend_eon.eon_logging import get_logger
from backend_eon.watcher.events import (
    CHANNEL_NATIVE,
    CHANNEL_TOKEN,
    TransferEvent,
    normalize_payload,
)
from backend_eon.watcher.registry import WalletRegistry

logger = get_logger(__name__)

TransferHandler = Callable[[TransferEvent], Awaitable[None]]

DEFAULT_MAX_BLOCKS_PER_TICK = 10


class EventSource(abc.ABC):
    """Delivers TransferEvents to one bound handler."""

    def __init__(self) -> None:
        self._handler: TransferHandler | None = None

    def bind(self, handler: TransferHandler) -> None:
        self._handler = handler

    async def emit(self, event: TransferEvent) -> None:
        """Hand one event to the handler. Handler errors are logged, never propagated."""
        if self._handler is None:
            logger.warning("event_source_unbound", tx_hash=event.tx_hash)
            return
        try:
            await self._handler(event)
        except Exception as e:
            logger.exception("event_handler_failed", tx_hash=event.tx_hash, error=str(e))

    @abc.abstractmethod
    async def reconcile(self) -> int:
        """One catch-up pass. Returns the number of events emitted."""


class PollingEventSource(EventSource):
    def __init__(
        self,
        chain: EonChain,
        registry: WalletRegistry,
        tokens: Iterable[str],
        *,
        max_blocks_per_tick: int = DEFAULT_MAX_BLOCKS_PER_TICK,
        start_block: int | None = None,
    ) -> None:
        super().__init__()
        if max_blocks_per_tick <= 0:
            raise ValueError("max_blocks_per_tick must be positive")
        self._chain = chain
        self._registry = registry
        self._tokens = [t.lower() for t in tokens if t]
        self._max_blocks = max_blocks_per_tick
        # last fully processed block; None -> start from the current head
        self._cursor: int | None = start_block - 1 if start_block is not None else None

    @property
    def cursor(self) -> int | None:
        return self._cursor

    async def reconcile(self) -> int:
        head = await self._chain.block_number()
        if self._cursor is None:
            self._cursor = head - 1
        start = self._cursor + 1
        if start > head:
            return 0
        end = min(head, start + self._max_blocks - 1)
        if head - end > 0:
            logger.info("event_source_lagging", from_block=start, to_block=end, head=head)

        watched = self._registry.addresses()
        if not watched:
            self._cursor = end
            return 0

        logs_by_block: dict[int, list[dict[str, Any]]] = {}
        if self._tokens:
            logs = await self._chain.get_transfer_logs(start, end, self._tokens, recipients=watched)
            for log in logs:
                decoded = decode_transfer_log(log)
                if decoded is None or decoded["block_number"] is None:
                    continue
                logs_by_block.setdefault(decoded["block_number"], []).append(decoded)

        emitted = 0
        for number in range(start, end + 1):
            block = await self._chain.get_block(number)
            block_time = to_int(block.get("timestamp", 0))
            for event in self._native_events(block, number, block_time):
                await self.emit(event)
                emitted += 1
            for decoded in logs_by_block.get(number, []):
                if not self._registry.contains(decoded["recipient"]) or decoded["amount"] <= 0:
                    continue
                await self.emit(
                    TransferEvent(
                        tx_hash=decoded["tx_hash"],
                        sender=decoded["sender"],
                        recipient=decoded["recipient"],
                        amount=decoded["amount"],
                        token=decoded["token"],
                        block_number=number,
                        block_time=block_time,
                        channel=CHANNEL_TOKEN,
                    )
                )
                emitted += 1
            self._cursor = number
        if emitted:
            logger.info("event_source_polled", from_block=start, to_block=end, events=emitted)
        return emitted

    def _native_events(self, block: dict[str, Any], number: int, block_time: int) -> list[TransferEvent]:
        events: list[TransferEvent] = []
        for tx in block.get("transactions") or []:
            if not isinstance(tx, dict) and not hasattr(tx, "get"):
                continue  # hash-only entries
            recipient = (tx.get("to") or "").lower()
            if not recipient or not self._registry.contains(recipient):
                continue
            value = to_int(tx.get("value") or 0)
            if value <= 0:
                continue
            events.append(
                TransferEvent(
                    tx_hash=to_hex(tx.get("hash")),
                    sender=(tx.get("from") or "").lower(),
                    recipient=recipient,
                    amount=value,
                    token=None,
                    block_number=number,
                    block_time=block_time,
                    channel=CHANNEL_NATIVE,
                )
            )
        return events


class PushEventSource(EventSource):
    """Webhook-driven source; reconcile() runs the optional polling backstop."""

    def __init__(self, backstop: PollingEventSource | None = None) -> None:
        super().__init__()
        self._backstop = backstop

    def bind(self, handler: TransferHandler) -> None:
        super().bind(handler)
        if self._backstop is not None:
            self._backstop.bind(handler)

    async def ingest(self, payload: Any) -> list[TransferEvent]:
        """Normalize a webhook body and emit its events in order."""
        events = normalize_payload(payload)
        for event in events:
            await self.emit(event)
        if events:
            logger.info("webhook_events_ingested", events=len(events))
        return events

    async def reconcile(self) -> int:
        if self._backstop is None:
            return 0
        return await self._backstop.reconcile()
