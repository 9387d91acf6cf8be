"""
Watcher: transfer events, push normalization, event sources, wallet registry, dedup.
"""

from backend_eon.watcher.dedup import Deduplicator
from backend_eon.watcher.events import TransferEvent, is_verification_payload, normalize_payload
from backend_eon.watcher.registry import WalletRegistry
from backend_eon.watcher.source import EventSource, PollingEventSource, PushEventSource

__all__ = [
    "Deduplicator",
    "EventSource",
    "PollingEventSource",
    "PushEventSource",
    "TransferEvent",
    "WalletRegistry",
    "is_verification_payload",
    "normalize_payload",
]
