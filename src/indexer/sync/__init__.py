"""Ledger-to-store reconciliation: trade log sync and curve reserve refresh."""

from indexer.sync.reserves import ReserveRefresher
from indexer.sync.synchronizer import TradeSynchronizer

__all__ = ["ReserveRefresher", "TradeSynchronizer"]
