"""SOL/USD price sources.

Each source returns a positive Decimal or None and never raises, so the
feed can query them side by side and take whatever succeeds. Historical
lookups (for backfilling trades synced while no price was available) follow
the same contract.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

import ccxt.async_support as ccxt_async
import httpx

from indexer.config import PriceFeedSettings
from indexer.logging import get_logger

logger = get_logger(__name__)


def _positive_decimal(raw: object) -> Decimal | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


class PriceSource(ABC):
    """A single upstream for the SOL/USD price."""

    name: str = "unknown"

    @abstractmethod
    async def fetch_price(self) -> Decimal | None:
        ...

    async def fetch_historical_price(self, timestamp: int) -> Decimal | None:
        """Price at ``timestamp`` (Unix seconds); None when the source has no history."""
        return None

    async def close(self) -> None:
        """Release network resources (no-op by default)."""


class CoinGeckoSource(PriceSource):
    """CoinGecko simple-price endpoint; daily history via /coins/solana/history."""

    name = "coingecko"

    def __init__(
        self,
        settings: PriceFeedSettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = settings.coingecko_url
        self._history_url = settings.coingecko_history_url
        self._daily: dict[str, Decimal] = {}
        self._client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds,
            headers={"Accept": "application/json"},
        )

    async def fetch_price(self) -> Decimal | None:
        try:
            response = await self._client.get(self._url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("price_source_failed", source=self.name, error=str(e))
            return None

        price = _positive_decimal((data.get("solana") or {}).get("usd"))
        if price is None:
            logger.warning("price_source_bad_payload", source=self.name)
        return price

    async def fetch_historical_price(self, timestamp: int) -> Decimal | None:
        """Daily price for the UTC date of ``timestamp``, cached per date."""
        date = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%d-%m-%Y")
        if date in self._daily:
            return self._daily[date]

        try:
            response = await self._client.get(
                self._history_url, params={"date": date, "localization": "false"}
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("price_history_failed", source=self.name, date=date, error=str(e))
            return None

        market = data.get("market_data") or {}
        price = _positive_decimal((market.get("current_price") or {}).get("usd"))
        if price is None:
            logger.warning("price_source_bad_payload", source=self.name, date=date)
            return None
        self._daily[date] = price
        return price

    async def close(self) -> None:
        await self._client.aclose()


class BinanceSource(PriceSource):
    """Binance spot ticker through ccxt; minute closes for history."""

    name = "binance"

    def __init__(
        self,
        settings: PriceFeedSettings,
        exchange: ccxt_async.Exchange | None = None,
    ) -> None:
        self._symbol = settings.binance_symbol
        self._exchange = exchange or ccxt_async.binance(
            {
                "enableRateLimit": True,
                "timeout": int(settings.request_timeout_seconds * 1000),
            }
        )

    async def fetch_price(self) -> Decimal | None:
        try:
            ticker = await self._exchange.fetch_ticker(self._symbol)
        except ccxt_async.BaseError as e:
            logger.warning("price_source_failed", source=self.name, error=str(e))
            return None

        price = _positive_decimal(ticker.get("last"))
        if price is None:
            logger.warning("price_source_bad_payload", source=self.name)
        return price

    async def fetch_historical_price(self, timestamp: int) -> Decimal | None:
        """Close of the 1m candle containing ``timestamp``."""
        minute_ms = (timestamp - timestamp % 60) * 1000
        try:
            rows = await self._exchange.fetch_ohlcv(
                self._symbol, "1m", since=minute_ms, limit=1
            )
        except ccxt_async.BaseError as e:
            logger.warning("price_history_failed", source=self.name, error=str(e))
            return None

        # Binance answers with the first candle at or after ``since``
        if not rows or rows[0][0] != minute_ms:
            return None
        return _positive_decimal(rows[0][4])

    async def close(self) -> None:
        """CRITICAL for ccxt async: must be called to avoid unclosed sessions."""
        await self._exchange.close()
