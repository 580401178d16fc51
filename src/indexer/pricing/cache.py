"""In-memory SOL/USD reference price cache with an explicit TTL contract.

A cached value is *fresh* for ``fresh_ttl`` seconds and may still be
served as *stale* up to ``stale_ttl`` seconds when a refresh fails. Past
that it is unavailable. The clock is injected so tests control time.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class CachedPrice:
    price: Decimal
    source: str
    stored_at: float


class ReferencePriceCache:
    """Single-value price cache guarded by an asyncio.Lock."""

    def __init__(
        self,
        fresh_ttl: float = 60.0,
        stale_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if stale_ttl < fresh_ttl:
            raise ValueError("stale_ttl must be >= fresh_ttl")
        self._fresh_ttl = fresh_ttl
        self._stale_ttl = stale_ttl
        self._clock = clock
        self._entry: CachedPrice | None = None
        self._lock = asyncio.Lock()

    async def put(self, price: Decimal, source: str) -> None:
        async with self._lock:
            self._entry = CachedPrice(price=price, source=source, stored_at=self._clock())

    async def _get_within(self, max_age: float) -> CachedPrice | None:
        async with self._lock:
            entry = self._entry
        if entry is None or self._clock() - entry.stored_at > max_age:
            return None
        return entry

    async def get_fresh(self) -> CachedPrice | None:
        """Return the cached price if younger than fresh_ttl."""
        return await self._get_within(self._fresh_ttl)

    async def get_stale(self) -> CachedPrice | None:
        """Return the cached price if younger than stale_ttl."""
        return await self._get_within(self._stale_ttl)

    async def age(self) -> float | None:
        """Seconds since the last put, or None if empty."""
        async with self._lock:
            entry = self._entry
        return None if entry is None else self._clock() - entry.stored_at
