"""SOL/USD reference price feed used by heartbeat candles and trade snapshots.

Lookup order:
  1. fresh cached value (younger than fresh_ttl)
  2. all sources queried concurrently; median of the successful answers
  3. stale cached value (younger than stale_ttl), logged as a warning
  4. None -- callers skip USD work for this pass

Historical lookups bypass the cache: every source is asked for its price
at the given time and the median of the answers is returned.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

from indexer.exceptions import PriceUnavailableError
from indexer.logging import get_logger
from indexer.pricing.cache import ReferencePriceCache
from indexer.pricing.sources import PriceSource

logger = get_logger(__name__)


def median_price(prices: list[Decimal]) -> Decimal:
    """Median of a non-empty list; mean of the middle pair for even lengths."""
    if not prices:
        raise ValueError("median of empty price list")
    ordered = sorted(prices)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


class ReferencePriceFeed:
    """Cached, multi-source SOL/USD price.

    Args:
        sources: Upstreams queried on a cache miss.
        cache: Shared TTL cache.
    """

    def __init__(self, sources: list[PriceSource], cache: ReferencePriceCache) -> None:
        self._sources = sources
        self._cache = cache
        self._refresh_lock = asyncio.Lock()

    async def current_reference_price_usd(self) -> Decimal | None:
        cached = await self._cache.get_fresh()
        if cached is not None:
            return cached.price

        # One refresh at a time; concurrent callers reuse its result.
        async with self._refresh_lock:
            cached = await self._cache.get_fresh()
            if cached is not None:
                return cached.price

            price = await self.refresh()
            if price is not None:
                return price

            stale = await self._cache.get_stale()
            if stale is not None:
                logger.warning(
                    "serving_stale_reference_price",
                    price=str(stale.price),
                    source=stale.source,
                    age_seconds=round(await self._cache.age() or 0.0, 1),
                )
                return stale.price

        logger.error("reference_price_unavailable", sources=len(self._sources))
        return None

    async def require_reference_price_usd(self) -> Decimal:
        """Like current_reference_price_usd but raises PriceUnavailableError on a miss."""
        price = await self.current_reference_price_usd()
        if price is None:
            raise PriceUnavailableError("No fresh or stale SOL/USD reference price")
        return price

    async def refresh(self) -> Decimal | None:
        """Query every source now and cache the median of what came back."""
        results = await asyncio.gather(*(source.fetch_price() for source in self._sources))
        answered = [
            (source.name, price)
            for source, price in zip(self._sources, results)
            if price is not None
        ]
        if not answered:
            return None

        price = median_price([p for _, p in answered])
        primary = answered[0][0]
        await self._cache.put(price, primary)
        logger.info(
            "reference_price_updated",
            price=str(price),
            source=primary,
            sources={name: str(p) for name, p in answered},
        )
        return price

    async def historical_reference_price_usd(self, timestamp: int) -> Decimal | None:
        """SOL/USD at ``timestamp`` (Unix seconds), or None if no source knows it."""
        results = await asyncio.gather(
            *(source.fetch_historical_price(timestamp) for source in self._sources)
        )
        answered = [p for p in results if p is not None]
        if not answered:
            return None
        return median_price(answered)

    async def close(self) -> None:
        for source in self._sources:
            await source.close()
