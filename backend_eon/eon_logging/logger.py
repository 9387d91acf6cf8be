"""
Structured JSON logging: timestamp, event_type, wallet_id, tx_hash.

structlog with ISO timestamps and log level. Every pipeline stage logs a
snake_case event name as the first argument plus keyword fields, e.g.
logger.info("settlement_group_submitted", contract=addr, entries=3).

Uses only stdlib logging and structlog; no backend_eon imports to avoid circular imports.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL_VALUE = getattr(logging, LOG_LEVEL, logging.INFO)

# json in production; anything else renders for a terminal
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()


def _add_timestamp(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _normalize_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Expose the structlog event name as event_type."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    return event_dict


def _shorten_addresses(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Console output only: trim long hex hashes so lines stay readable."""
    for key in ("tx_hash", "settlement_tx_hash"):
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > 18:
            event_dict[key] = value[:10] + "..." + value[-6:]
    return event_dict


def configure_structlog() -> None:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
        _normalize_event,
    ]
    if LOG_FORMAT == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(_shorten_addresses)
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVEL_VALUE),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Return a structured logger for the given module name.

        logger = get_logger(__name__)
        logger.info("donation_queued", wallet_id=addr, amount=5_000_000)
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_wallet(wallet_id: str) -> structlog.BoundLogger:
    """Logger with wallet_id bound to all subsequent calls."""
    return get_logger("backend_eon").bind(wallet_id=wallet_id)


def bind_tx(tx_hash: str) -> structlog.BoundLogger:
    """Logger with tx_hash bound to all subsequent calls."""
    return get_logger("backend_eon").bind(tx_hash=tx_hash)
