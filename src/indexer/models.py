"""Shared data models for the bonding curve indexer.

CRITICAL: Reserves are integers in base units (lamports / smallest token
unit). Trade and candle prices are Decimal. Never use float for either.
Timestamps are Unix seconds (UTC).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from indexer.candles.intervals import CandleInterval


class TradeSide(str, Enum):
    """Swap direction, from the trader's point of view."""

    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class Asset:
    """Bonding curve state for one token mint.

    ``virtual_*`` reserves drive pricing; ``real_*`` reserves are what the
    curve actually custodies. ``graduated`` only ever goes False -> True.
    """

    asset_id: str
    virtual_sol_reserves: int
    virtual_token_reserves: int
    real_sol_reserves: int = 0
    real_token_reserves: int = 0
    graduated: bool = False
    updated_at: int = 0

    @property
    def invariant(self) -> int:
        """The constant-product k."""
        return self.virtual_sol_reserves * self.virtual_token_reserves


@dataclass(frozen=True)
class Trade:
    """An executed swap mirrored from the ledger.

    ``signature`` is the ledger transaction id and the natural key.
    ``created_at`` is the ledger-confirmed time, not the ingestion time.
    Amounts are human units (SOL, whole tokens).
    """

    signature: str
    asset_id: str
    trader: str
    side: TradeSide
    sol_amount: Decimal
    token_amount: Decimal
    price_sol: Decimal
    protocol_fee: Decimal
    creator_fee: Decimal
    created_at: int
    sol_price_usd: Decimal | None = None

    @property
    def total_fee(self) -> Decimal:
        return self.protocol_fee + self.creator_fee


@dataclass
class Candle:
    """One OHLCV bucket for an asset at a given resolution.

    SOL fields are always present. USD fields are None until a trade or
    heartbeat carrying a SOL/USD reference price touches the bucket.
    """

    asset_id: str
    interval: CandleInterval
    bucket_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    trade_count: int
    open_usd: Decimal | None = None
    high_usd: Decimal | None = None
    low_usd: Decimal | None = None
    close_usd: Decimal | None = None
    volume_usd: Decimal | None = None
    sol_price_usd: Decimal | None = None

    @property
    def key(self) -> tuple[str, CandleInterval, int]:
        return (self.asset_id, self.interval, self.bucket_time)


@dataclass
class SyncResult:
    """Outcome of one synchronizer run.

    ``skipped`` counts signatures already present in the trade log,
    ``errors`` counts per-item fetch/decode/persist failures. A run-level
    failure (ledger unreachable) sets ``success=False`` and ``error``.
    """

    success: bool
    checked: int = 0
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    synced_signatures: list[str] = field(default_factory=list)
    synced_trades: list[Trade] = field(default_factory=list)
    error: str | None = None


@dataclass
class HeartbeatResult:
    """Outcome of one heartbeat pass."""

    reference_price_usd: Decimal | None
    skipped: bool = False
    created: dict[str, list[CandleInterval]] = field(default_factory=dict)
    failed_assets: list[str] = field(default_factory=list)

    @property
    def candles_created(self) -> int:
        return sum(len(intervals) for intervals in self.created.values())


@dataclass
class BackfillResult:
    """Outcome of one USD backfill pass over trades without a SOL/USD snapshot."""

    checked: int = 0
    updated: int = 0
    unpriced: int = 0  # no source knew the price at trade time
    rebuilt: dict[str, int] = field(default_factory=dict)
