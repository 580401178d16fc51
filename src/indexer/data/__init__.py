"""Local SQLite mirror of assets, trades and candles."""

from indexer.data.database import IndexerDatabase
from indexer.data.store import IndexerStore

__all__ = ["IndexerDatabase", "IndexerStore"]
