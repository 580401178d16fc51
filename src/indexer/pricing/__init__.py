"""SOL/USD reference price -- TTL cache, upstream sources and the median feed."""

from indexer.pricing.cache import ReferencePriceCache
from indexer.pricing.feed import ReferencePriceFeed, median_price
from indexer.pricing.sources import BinanceSource, CoinGeckoSource, PriceSource

__all__ = [
    "BinanceSource",
    "CoinGeckoSource",
    "PriceSource",
    "ReferencePriceCache",
    "ReferencePriceFeed",
    "median_price",
]
