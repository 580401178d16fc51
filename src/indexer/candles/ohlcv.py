"""OHLCV update rules shared by incremental updates, rebuilds and heartbeats.

fold_trade is the only place a trade changes a candle. The incremental
path (one trade at a time against the store) and the rebuild path (all
trades folded in memory) both go through it, which is what makes a rebuild
produce exactly the candles an incremental replay would.
"""

from decimal import Decimal

from indexer.candles.intervals import CandleInterval
from indexer.exceptions import InvariantViolation
from indexer.models import Candle

CandleKey = tuple[str, CandleInterval, int]


def fold_trade(
    existing: Candle | None,
    key: CandleKey,
    price: Decimal,
    volume: Decimal,
    sol_price_usd: Decimal | None = None,
) -> Candle:
    """Return the candle for ``key`` after folding in one trade.

    ``open`` is set once, at creation, and never modified. USD fields follow
    the same min/max/accumulate rule when a reference price is supplied;
    ``open_usd`` is only set by the first USD-bearing trade in the bucket.
    ``existing`` is not mutated.
    """
    asset_id, interval, bucket = key
    has_usd = sol_price_usd is not None and sol_price_usd > 0
    price_usd = price * sol_price_usd if has_usd else None
    volume_usd = volume * sol_price_usd if has_usd else None

    if existing is None:
        return Candle(
            asset_id=asset_id,
            interval=interval,
            bucket_time=bucket,
            open=price,
            high=price,
            low=price,
            close=price,
            volume=volume,
            trade_count=1,
            open_usd=price_usd,
            high_usd=price_usd,
            low_usd=price_usd,
            close_usd=price_usd,
            volume_usd=volume_usd,
            sol_price_usd=sol_price_usd if has_usd else None,
        )

    candle = Candle(
        asset_id=existing.asset_id,
        interval=existing.interval,
        bucket_time=existing.bucket_time,
        open=existing.open,
        high=max(existing.high, price),
        low=min(existing.low, price),
        close=price,
        volume=existing.volume + volume,
        trade_count=existing.trade_count + 1,
        open_usd=existing.open_usd,
        high_usd=existing.high_usd,
        low_usd=existing.low_usd,
        close_usd=existing.close_usd,
        volume_usd=existing.volume_usd,
        sol_price_usd=existing.sol_price_usd,
    )

    if has_usd:
        if candle.open_usd is None:
            candle.open_usd = price_usd
        candle.high_usd = price_usd if candle.high_usd is None else max(candle.high_usd, price_usd)
        candle.low_usd = price_usd if candle.low_usd is None else min(candle.low_usd, price_usd)
        candle.close_usd = price_usd
        candle.volume_usd = (candle.volume_usd or Decimal("0")) + volume_usd
        candle.sol_price_usd = sol_price_usd

    return candle


def check_candle_invariants(candle: Candle, previous: Candle | None = None) -> None:
    """Raise InvariantViolation if ``candle`` is not a well-formed bar.

    With ``previous`` (the same bucket before the update) also checks that
    volume and trade count did not go backwards and open did not move.
    """
    label = f"{candle.asset_id}/{candle.interval.value}@{candle.bucket_time}"

    if not (candle.low <= candle.open <= candle.high and candle.low <= candle.close <= candle.high):
        raise InvariantViolation(
            f"OHLC out of range for {label}: open={candle.open} high={candle.high} "
            f"low={candle.low} close={candle.close}"
        )
    if candle.volume < 0 or candle.trade_count < 0:
        raise InvariantViolation(f"Negative volume or trade count for {label}")

    usd = (candle.open_usd, candle.high_usd, candle.low_usd, candle.close_usd)
    if all(v is not None for v in usd):
        open_usd, high_usd, low_usd, close_usd = usd
        if not (low_usd <= open_usd <= high_usd and low_usd <= close_usd <= high_usd):
            raise InvariantViolation(f"USD OHLC out of range for {label}")

    if previous is not None:
        if candle.open != previous.open:
            raise InvariantViolation(f"Open changed for {label}")
        if candle.volume < previous.volume or candle.trade_count < previous.trade_count:
            raise InvariantViolation(f"Volume or trade count decreased for {label}")


def make_heartbeat_candle(
    key: CandleKey,
    last_price: Decimal,
    reference_price_usd: Decimal,
    previous: Candle | None,
) -> Candle:
    """Zero-volume candle carrying the last trade price into a quiet bucket.

    SOL OHLC are flat at ``last_price``. USD OHLC move with the reference
    price: the previous bucket's USD close is rescaled by new/old reference
    price, and high/low span that value and both closes.
    """
    asset_id, interval, bucket = key
    current_close_usd = last_price * reference_price_usd

    prev_close_usd = current_close_usd
    if previous is not None and previous.close_usd is not None:
        prev_close_usd = previous.close_usd

    candidates = [prev_close_usd, current_close_usd]
    if previous is not None and previous.sol_price_usd:
        candidates.append(prev_close_usd * reference_price_usd / previous.sol_price_usd)

    return Candle(
        asset_id=asset_id,
        interval=interval,
        bucket_time=bucket,
        open=last_price,
        high=last_price,
        low=last_price,
        close=last_price,
        volume=Decimal("0"),
        trade_count=0,
        open_usd=prev_close_usd,
        high_usd=max(candidates),
        low_usd=min(candidates),
        close_usd=current_close_usd,
        volume_usd=Decimal("0"),
        sol_price_usd=reference_price_usd,
    )
