"""
Application-level exceptions.

Responsibilities:
- Define domain exceptions for the watcher pipeline (rate limits, settlement
  preconditions, malformed data, duplicate settlements, configuration).
- Classify foreign exceptions (web3, httpx) as rate-limit-class or not.
"""

from __future__ import annotations

from typing import Any

RATE_LIMIT_RPC_CODE = -32016
_RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "too many requests")


class EonError(Exception):
    """Base for all watcher errors."""


class RateLimitError(EonError):
    """Transient provider throttling. Retried with bounded backoff."""


class PreconditionError(EonError):
    """A settlement precondition does not hold. Never retried."""


class ExecutorNotAuthorizedError(PreconditionError):
    def __init__(self, operator: str, contract: str) -> None:
        super().__init__(f"operator {operator} is not an executor on {contract}")
        self.operator = operator
        self.contract = contract


class InsufficientAllowanceError(PreconditionError):
    def __init__(self, owner: str, required: int, available: int) -> None:
        super().__init__(
            f"insufficient allowance for {owner}: required {required}, available {available}"
        )
        self.owner = owner
        self.required = required
        self.available = available


class DataError(EonError):
    """Malformed configuration or record, missing price. Logged and defaulted."""


class DuplicateSettlementError(EonError):
    """A settlement record for this source transaction already exists."""

    def __init__(self, source_tx_hash: str) -> None:
        super().__init__(f"settlement already recorded for {source_tx_hash}")
        self.source_tx_hash = source_tx_hash


class ConfigurationError(EonError):
    """Required setting missing or invalid at bootstrap."""


def _error_code(exc: BaseException) -> Any:
    code = getattr(exc, "code", None)
    if code is not None:
        return code
    # web3 RPC errors carry the JSON-RPC error dict as the first arg
    for arg in getattr(exc, "args", ()):
        if isinstance(arg, dict) and "code" in arg:
            return arg["code"]
    return None


def _http_status(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def is_rate_limit_error(exc: BaseException) -> bool:
    """True if exc looks like provider throttling (HTTP 429, code -32016, rate-limit message)."""
    if isinstance(exc, RateLimitError):
        return True
    if _http_status(exc) == 429:
        return True
    if _error_code(exc) == RATE_LIMIT_RPC_CODE:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)
