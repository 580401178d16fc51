"""Abstract ledger source interface.

Sync and reserve-refresh code depends only on this interface, keeping the
Solana JSON-RPC details isolated in the concrete implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class LedgerTransaction:
    """The parts of a confirmed transaction the indexer reads."""

    signature: str
    log_lines: list[str] = field(default_factory=list)
    confirmed_at: int | None = None  # block time, Unix seconds


class LedgerSource(ABC):
    """Read-only view of confirmed ledger history."""

    @abstractmethod
    async def list_recent_transaction_ids(self, account: str, limit: int) -> list[str]:
        """Return up to ``limit`` transaction signatures touching ``account``, newest first.

        Query with the program id itself, not a derived account, so every
        trade event is seen. Raises SourceUnavailableError if the source
        cannot be reached.
        """
        ...

    @abstractmethod
    async def fetch_transaction(self, signature: str) -> LedgerTransaction | None:
        """Fetch one confirmed transaction, or None if the ledger does not know it."""
        ...

    @abstractmethod
    async def fetch_account_data(self, address: str) -> bytes | None:
        """Fetch raw account data, or None if the account does not exist."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...
