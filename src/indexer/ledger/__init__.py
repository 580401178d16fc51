"""Ledger source layer -- Solana JSON-RPC integration via httpx."""

from indexer.ledger.client import LedgerSource, LedgerTransaction
from indexer.ledger.solana_rpc import SolanaRpcClient

__all__ = ["LedgerSource", "LedgerTransaction", "SolanaRpcClient"]
