"""
Native-coin price oracle.

Polls CoinGecko for the ETH/USD price and falls back to CryptoCompare. The
last good value is served until it goes stale; a stale read triggers one
refresh (concurrent callers share it). Before any upstream success the
configured fallback price is used.
"""

from __future__ import annotations

import asyncio
import time
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable

import httpx

from backend_eon.core.exceptions import DataError
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)

COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price"
CRYPTOCOMPARE_URL = "https://min-api.cryptocompare.com/data/price"
DEFAULT_FALLBACK_PRICE = 3000.0


async def _coingecko(client: httpx.AsyncClient) -> float:
    resp = await client.get(COINGECKO_URL, params={"ids": "ethereum", "vs_currencies": "usd"})
    resp.raise_for_status()
    data = resp.json()
    try:
        return float(data["ethereum"]["usd"])
    except (KeyError, TypeError, ValueError) as e:
        raise DataError(f"unexpected CoinGecko payload: {data!r}") from e


async def _cryptocompare(client: httpx.AsyncClient) -> float:
    resp = await client.get(CRYPTOCOMPARE_URL, params={"fsym": "ETH", "tsyms": "USD"})
    resp.raise_for_status()
    data = resp.json()
    try:
        return float(data["USD"])
    except (KeyError, TypeError, ValueError) as e:
        raise DataError(f"unexpected CryptoCompare payload: {data!r}") from e


class PriceOracle:
    """Current native-coin unit price in settlement currency, with conversion helpers."""

    def __init__(
        self,
        *,
        stale_after_sec: float = 180.0,
        fallback_price: float = DEFAULT_FALLBACK_PRICE,
        native_decimals: int = 18,
        settlement_decimals: int = 6,
        request_timeout_sec: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stale_after = stale_after_sec
        self._fallback = fallback_price
        self._native_decimals = native_decimals
        self._settlement_decimals = settlement_decimals
        self._timeout = request_timeout_sec
        self._transport = transport
        self._clock = clock
        self._price: float | None = None
        self._fetched_at: float | None = None
        self._source: str | None = None
        self._lock = asyncio.Lock()

    @property
    def last_price(self) -> float | None:
        return self._price

    def is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return self._clock() - self._fetched_at > self._stale_after

    def status(self) -> dict[str, Any]:
        return {
            "price": self._price if self._price is not None else self._fallback,
            "source": self._source or "fallback",
            "stale": self.is_stale(),
        }

    async def refresh(self) -> float | None:
        """Fetch a fresh price. Returns it, or None if every upstream failed."""
        if self._lock.locked():
            # a refresh is already in flight; share its result
            async with self._lock:
                return self._price
        async with self._lock:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout), transport=self._transport
            ) as client:
                for name, fetch in (("coingecko", _coingecko), ("cryptocompare", _cryptocompare)):
                    try:
                        price = await fetch(client)
                    except (httpx.HTTPError, DataError, ValueError) as e:
                        logger.warning("price_source_failed", source=name, error=str(e))
                        continue
                    if price <= 0:
                        logger.warning("price_source_nonpositive", source=name, price=price)
                        continue
                    self._price = price
                    self._fetched_at = self._clock()
                    self._source = name
                    logger.debug("price_refreshed", source=name, price=price)
                    return price
            logger.error("price_refresh_failed", last_price=self._price, fallback=self._fallback)
            return None

    async def current_price(self) -> float:
        """Price to use now: fresh value, else last good value, else the fallback constant."""
        if self.is_stale():
            await self.refresh()
        if self._price is None:
            return self._fallback
        return self._price

    async def to_settlement_units(self, native_amount: int) -> int:
        """Convert native base units to settlement base units; truncates only at the end."""
        price = Decimal(str(await self.current_price()))
        native = Decimal(native_amount) / (Decimal(10) ** self._native_decimals)
        value = native * price * (Decimal(10) ** self._settlement_decimals)
        return int(value.to_integral_value(rounding=ROUND_DOWN))

    async def estimate_settlement_units(self, native_amount: int) -> float:
        """Floating estimate of the same conversion."""
        price = await self.current_price()
        return native_amount / (10 ** self._native_decimals) * price * (10 ** self._settlement_decimals)
