"""Custom exceptions for the bonding curve indexer.

Kept in one module so the codec, ledger, candle and sync layers can share
them without importing each other.
"""


class IndexerError(Exception):
    """Base exception for all indexer errors."""


class SourceUnavailableError(IndexerError):
    """Raised when the ledger RPC cannot be reached or returns an RPC error.

    Transient: the scheduled caller retries on its next pass.
    """


class PriceUnavailableError(IndexerError):
    """Raised when no fresh or stale reference price can be produced."""


class EventDecodeError(IndexerError):
    """Raised inside the codec when a payload is truncated or malformed.

    Never escapes the codec's public decode functions.
    """


class AccountDecodeError(IndexerError):
    """Raised when bonding curve account data does not match the expected layout."""


class InvariantViolation(IndexerError):
    """Raised when a candle or reserve invariant would be broken.

    Indicates a logic or data-corruption bug, not an environmental problem.
    The single offending update is aborted.
    """


class CurveClosedError(IndexerError):
    """Raised when a swap is quoted or applied on a graduated curve."""
