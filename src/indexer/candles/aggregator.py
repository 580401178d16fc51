"""Multi-resolution OHLCV candle aggregator.

Every trade updates one candle per interval (1m, 5m, 15m, 1h, 1d). The
read-modify-write of a bucket is one immediate SQLite transaction
(IndexerStore.update_candle), so concurrent writers, in this process or
another one on the same file, cannot lose highs/lows. Each bucket is
committed on its own.

A trade that fails to apply marks its asset uncharted in the store.
repair_uncharted() rebuilds marked assets from the trade log; the sync job
calls it at the start of every pass.

Heartbeat candles keep USD series moving with the SOL/USD reference price
while an asset is not trading. They are inserted with INSERT OR IGNORE and
never replace a trade-backed candle.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from indexer.candles.intervals import ALL_INTERVALS, CandleInterval, bucket_time
from indexer.candles.ohlcv import (
    CandleKey,
    check_candle_invariants,
    fold_trade,
    make_heartbeat_candle,
)
from indexer.data.store import IndexerStore
from indexer.exceptions import InvariantViolation
from indexer.logging import get_logger
from indexer.models import Candle, HeartbeatResult, Trade

logger = get_logger(__name__)


class CandleAggregator:
    """Maintains candles for all assets on top of IndexerStore.

    Args:
        store: Persistence for trades and candles.
        intervals: Resolutions to maintain (all five by default).
    """

    def __init__(
        self,
        store: IndexerStore,
        intervals: Iterable[CandleInterval] = ALL_INTERVALS,
    ) -> None:
        self._store = store
        self._intervals = tuple(intervals)

    # ──────────────────────────────────────────────
    # Incremental updates
    # ──────────────────────────────────────────────

    async def apply_trade(
        self,
        asset_id: str,
        price_sol: Decimal,
        sol_volume: Decimal,
        timestamp: int,
        sol_price_usd: Decimal | None = None,
    ) -> list[Candle]:
        """Fold one trade into the candle of every interval.

        A bucket whose update would break an invariant is left untouched;
        the other intervals are still updated and the first violation is
        re-raised at the end. Any failure marks the asset uncharted so the
        next repair pass rebuilds it.

        Returns:
            The candles written, one per successfully updated interval.
        """
        if price_sol <= 0:
            raise ValueError(f"price_sol must be positive, got {price_sol}")
        if sol_volume < 0:
            raise ValueError(f"sol_volume cannot be negative, got {sol_volume}")

        try:
            written, violations = await self._apply_buckets(
                asset_id, price_sol, sol_volume, timestamp, sol_price_usd
            )
            if violations:
                raise violations[0]
        except Exception:
            await self._store.mark_uncharted(asset_id)
            raise
        return written

    async def _apply_buckets(
        self,
        asset_id: str,
        price_sol: Decimal,
        sol_volume: Decimal,
        timestamp: int,
        sol_price_usd: Decimal | None,
    ) -> tuple[list[Candle], list[InvariantViolation]]:
        written: list[Candle] = []
        violations: list[InvariantViolation] = []

        for interval in self._intervals:
            key: CandleKey = (asset_id, interval, bucket_time(timestamp, interval))

            def fold(existing: Candle | None, key: CandleKey = key) -> Candle:
                candle = fold_trade(existing, key, price_sol, sol_volume, sol_price_usd)
                check_candle_invariants(candle, existing)
                return candle

            try:
                candle = await self._store.update_candle(*key, fold)
            except InvariantViolation as e:
                logger.error(
                    "candle_invariant_violation",
                    asset_id=asset_id,
                    interval=interval.value,
                    bucket_time=key[2],
                    error=str(e),
                )
                violations.append(e)
                continue
            assert candle is not None
            written.append(candle)

        return written, violations

    async def apply_trades(self, trades: Iterable[Trade]) -> int:
        """Apply trades oldest first. Returns how many were applied.

        A failing trade is logged, leaves its asset marked uncharted and
        does not stop the rest.
        """
        applied = 0
        for trade in sorted(trades, key=lambda t: (t.created_at, t.signature)):
            try:
                await self.apply_trade(
                    trade.asset_id,
                    trade.price_sol,
                    trade.sol_amount,
                    trade.created_at,
                    trade.sol_price_usd,
                )
                applied += 1
            except InvariantViolation:
                # Already logged per bucket
                continue
            except Exception:
                logger.warning(
                    "candle_update_failed",
                    signature=trade.signature,
                    asset_id=trade.asset_id,
                    exc_info=True,
                )
        return applied

    # ──────────────────────────────────────────────
    # Rebuild
    # ──────────────────────────────────────────────

    def fold_trades(self, trades: Iterable[Trade]) -> dict[CandleKey, Candle]:
        """Fold trades (oldest first) into candles entirely in memory."""
        candles: dict[CandleKey, Candle] = {}
        for trade in sorted(trades, key=lambda t: (t.created_at, t.signature)):
            for interval in self._intervals:
                key: CandleKey = (trade.asset_id, interval, bucket_time(trade.created_at, interval))
                previous = candles.get(key)
                candle = fold_trade(
                    previous, key, trade.price_sol, trade.sol_amount, trade.sol_price_usd
                )
                check_candle_invariants(candle, previous)
                candles[key] = candle
        return candles

    async def rebuild_all(self, asset_ids: Iterable[str] | None = None) -> dict[str, int]:
        """Recompute every candle of the given assets from the trade log.

        Defaults to all assets that have trades. Existing candles of an
        asset, heartbeat candles included, are replaced by the folded
        result and its uncharted mark is cleared. One asset failing does
        not stop the others.

        Returns:
            Mapping of asset_id to number of candles written.
        """
        if asset_ids is None:
            asset_ids = await self._store.get_traded_asset_ids()

        rebuilt: dict[str, int] = {}
        for asset_id in asset_ids:
            try:
                trades, candles = await self._store.rebuild_candles(
                    asset_id, lambda log: self.fold_trades(log).values()
                )
                rebuilt[asset_id] = candles
                logger.info("candles_rebuilt", asset_id=asset_id, trades=trades, candles=candles)
            except Exception:
                logger.error("candle_rebuild_failed", asset_id=asset_id, exc_info=True)

        return rebuilt

    async def repair_uncharted(self) -> dict[str, int]:
        """Rebuild every asset a failed update left uncharted."""
        pending = await self._store.get_uncharted_assets()
        if not pending:
            return {}
        logger.info("uncharted_assets_repairing", assets=pending)
        return await self.rebuild_all(pending)

    # ──────────────────────────────────────────────
    # Heartbeat and USD refresh
    # ──────────────────────────────────────────────

    async def heartbeat(
        self, now: int, reference_price_usd: Decimal | None
    ) -> HeartbeatResult:
        """Fill the current bucket of every quiet interval for active assets.

        Skips the whole pass when no reference price is available. Assets
        without any trade have no last price and are left alone.
        """
        if reference_price_usd is None:
            logger.info("heartbeat_skipped", reason="reference_price_unavailable")
            return HeartbeatResult(reference_price_usd=None, skipped=True)

        result = HeartbeatResult(reference_price_usd=reference_price_usd)
        assets = await self._store.get_assets(active_only=True)

        for asset in assets:
            try:
                created = await self._heartbeat_asset(asset.asset_id, now, reference_price_usd)
            except Exception:
                logger.error("heartbeat_asset_failed", asset_id=asset.asset_id, exc_info=True)
                result.failed_assets.append(asset.asset_id)
                continue
            if created:
                result.created[asset.asset_id] = created

        logger.info(
            "heartbeat_complete",
            assets=len(assets),
            candles_created=result.candles_created,
            failed=len(result.failed_assets),
            reference_price_usd=str(reference_price_usd),
        )
        return result

    async def _heartbeat_asset(
        self, asset_id: str, now: int, reference_price_usd: Decimal
    ) -> list[CandleInterval]:
        created: list[CandleInterval] = []
        last_trade = await self._store.get_last_trade(asset_id)
        if last_trade is None:
            return created

        for interval in self._intervals:
            key: CandleKey = (asset_id, interval, bucket_time(now, interval))
            if await self._store.get_candle(*key) is not None:
                continue

            previous = await self._store.get_latest_candle(asset_id, interval, before=key[2])
            candle = make_heartbeat_candle(key, last_trade.price_sol, reference_price_usd, previous)
            check_candle_invariants(candle)
            # A trade landing between the check and the insert wins
            if await self._store.insert_candle_if_absent(candle):
                created.append(interval)
        return created

    async def refresh_close_usd(self, now: int, reference_price_usd: Decimal) -> int:
        """Re-mark the USD close of current-bucket candles at a new reference price.

        ``close_usd`` becomes last trade price times the reference price and
        ``high_usd``/``low_usd`` widen to include it. SOL fields are not
        touched. Returns the number of candles updated.
        """
        updated = 0
        for asset in await self._store.get_assets(active_only=True):
            try:
                updated += await self._refresh_asset(asset.asset_id, now, reference_price_usd)
            except Exception:
                logger.error("close_usd_refresh_failed", asset_id=asset.asset_id, exc_info=True)

        logger.info(
            "close_usd_refreshed",
            candles=updated,
            reference_price_usd=str(reference_price_usd),
        )
        return updated

    async def _refresh_asset(self, asset_id: str, now: int, reference_price_usd: Decimal) -> int:
        last_trade = await self._store.get_last_trade(asset_id)
        if last_trade is None:
            return 0
        current_usd = last_trade.price_sol * reference_price_usd

        def remark(candle: Candle | None) -> Candle | None:
            if candle is None:
                return None
            if candle.open_usd is None:
                candle.open_usd = current_usd
            candle.close_usd = current_usd
            candle.high_usd = max(candle.high_usd or current_usd, current_usd)
            candle.low_usd = min(candle.low_usd or current_usd, current_usd)
            candle.sol_price_usd = reference_price_usd
            check_candle_invariants(candle)
            return candle

        updated = 0
        for interval in self._intervals:
            if await self._store.update_candle(
                asset_id, interval, bucket_time(now, interval), remark
            ):
                updated += 1
        return updated

    # ──────────────────────────────────────────────
    # Chart reads
    # ──────────────────────────────────────────────

    async def get_candles(
        self,
        asset_id: str,
        interval: CandleInterval = CandleInterval.M5,
        limit: int = 100,
    ) -> list[Candle]:
        """Latest ``limit`` candles of one series, oldest first."""
        return await self._store.get_candles(asset_id, interval, limit=limit)

    async def get_usd_candles(
        self,
        asset_id: str,
        interval: CandleInterval = CandleInterval.M5,
        limit: int = 100,
    ) -> list[dict]:
        """USD bars for charting, oldest first.

        Missing USD prices fall back to the SOL value, missing USD volume to
        zero. Bars whose close is not positive are dropped.
        """
        bars = []
        for c in await self._store.get_candles(asset_id, interval, limit=limit):
            close = c.close_usd if c.close_usd is not None else c.close
            if close <= 0:
                continue
            bars.append(
                {
                    "time": c.bucket_time,
                    "open": c.open_usd if c.open_usd is not None else c.open,
                    "high": c.high_usd if c.high_usd is not None else c.high,
                    "low": c.low_usd if c.low_usd is not None else c.low,
                    "close": close,
                    "volume": c.volume_usd if c.volume_usd is not None else Decimal("0"),
                }
            )
        return bars
