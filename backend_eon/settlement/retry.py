"""
Bounded exponential backoff for rate-limit-class errors.

Only throttling is retried; any other exception propagates on the first
attempt. Each call site gets its own budget.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from backend_eon.core.exceptions import RateLimitError, is_rate_limit_error
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SEC = 1.0
DEFAULT_MAX_DELAY_SEC = 60.0


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = DEFAULT_ATTEMPTS
    base_delay_sec: float = DEFAULT_BASE_DELAY_SEC
    max_delay_sec: float = DEFAULT_MAX_DELAY_SEC
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def delays(self) -> list[float]:
        """Backoff before attempts 2..N: base, 2*base, 4*base, ... capped."""
        out: list[float] = []
        delay = self.base_delay_sec
        for _ in range(max(0, self.attempts - 1)):
            out.append(delay)
            delay = min(delay * 2, self.max_delay_sec)
        return out


async def with_rate_limit_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    policy: RetryPolicy,
) -> T:
    """
    Await operation(), retrying on rate-limit errors per policy.

    Raises RateLimitError (chained to the last provider error) once the
    budget is exhausted.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_rate_limit_error(e):
                raise
            if attempt > len(delays):
                logger.error("rate_limit_give_up", step=label, attempts=attempt, error=str(e))
                raise RateLimitError(
                    f"{label}: rate limited after {attempt} attempts: {e}"
                ) from e
            delay = delays[attempt - 1]
            logger.warning(
                "rate_limit_retry",
                step=label,
                attempt=attempt,
                max_attempts=policy.attempts,
                delay_sec=delay,
                error=str(e),
            )
            await policy.sleep(delay)
