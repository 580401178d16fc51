"""Indexer pipeline -- the operations the scheduled jobs and admin tools call.

Ties the synchronizer, the candle aggregator and the reference price feed
together:

- run_sync: rebuild assets a failed update left uncharted, pull new trades,
  then fold each one into candles
- record_local_trade: persist a trade executed through this system and
  update candles immediately, before the next scheduled sync sees it
- run_heartbeat / run_price_refresh: keep USD series moving while quiet
- quote: price a swap against the stored curve state
- backfill_usd_prices: stamp historical SOL/USD on trades synced without
  one and rebuild the affected candles
- rebuild_candles / reset_trades: administrative repair paths
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from decimal import Decimal

from indexer.candles.aggregator import CandleAggregator
from indexer.config import CurveSettings
from indexer.curve.math import BuyQuote, SellQuote, quote_buy, quote_sell_capped
from indexer.data.store import IndexerStore
from indexer.exceptions import CurveClosedError
from indexer.logging import get_logger
from indexer.models import BackfillResult, HeartbeatResult, SyncResult, Trade, TradeSide
from indexer.pricing.feed import ReferencePriceFeed
from indexer.sync.reserves import ReserveRefresher
from indexer.sync.synchronizer import TradeSynchronizer

logger = get_logger(__name__)


class IndexerPipeline:
    """Coordinates sync, candle maintenance and price refresh.

    Args:
        synchronizer: Ledger to trade-log reconciliation.
        aggregator: Candle maintenance.
        store: Shared persistence.
        price_feed: SOL/USD reference price.
        reserves: Curve account refresher (optional).
        curve_settings: Fee and liquidity-buffer constants for quotes.
        clock: Returns the current Unix time; injectable for tests.
    """

    def __init__(
        self,
        synchronizer: TradeSynchronizer,
        aggregator: CandleAggregator,
        store: IndexerStore,
        price_feed: ReferencePriceFeed,
        reserves: ReserveRefresher | None = None,
        curve_settings: CurveSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._synchronizer = synchronizer
        self._aggregator = aggregator
        self._store = store
        self._price_feed = price_feed
        self._reserves = reserves
        self._curve = curve_settings or CurveSettings()
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    async def record_local_trade(self, trade: Trade) -> bool:
        """Persist a locally executed trade and update its candles right away.

        Candles are only touched if this call inserted the trade, so a sync
        run that already mirrored it does not count it twice.

        Returns:
            True if the trade was new.
        """
        inserted = await self._store.insert_trade(trade)
        if not inserted:
            return False

        await self._aggregator.apply_trade(
            trade.asset_id,
            trade.price_sol,
            trade.sol_amount,
            trade.created_at,
            trade.sol_price_usd,
        )
        logger.info(
            "local_trade_recorded",
            signature=trade.signature,
            asset_id=trade.asset_id,
            side=trade.side.value,
        )
        return True

    async def quote(self, asset_id: str, side: TradeSide, amount: int) -> BuyQuote | SellQuote:
        """Quote a swap against the stored curve state.

        ``amount`` is lamports for a buy and token base units for a sell.
        Sells are capped to the curve's real SOL; the returned quote says so.
        """
        asset = await self._store.get_asset(asset_id)
        if asset is None:
            raise KeyError(f"Unknown asset {asset_id}")
        if asset.graduated:
            raise CurveClosedError(f"Curve for {asset_id} has graduated")

        if side is TradeSide.BUY:
            return quote_buy(
                amount,
                asset.virtual_sol_reserves,
                asset.virtual_token_reserves,
                self._curve.total_fee_bps,
            )
        return quote_sell_capped(
            amount, asset, self._curve.total_fee_bps, self._curve.liquidity_buffer_bps
        )

    async def run_sync(self, limit: int = 100, asset_filter: str | None = None) -> SyncResult:
        """Sync recent trades and fold the newly inserted ones into candles.

        Assets whose candles a previous pass failed to update are rebuilt
        from the trade log first, so a failed aggregation is retried on the
        next scheduled pass even though its trades are no longer new.
        """
        await self._aggregator.repair_uncharted()
        result = await self._synchronizer.sync(limit=limit, asset_filter=asset_filter)
        if result.synced_trades:
            applied = await self._aggregator.apply_trades(result.synced_trades)
            if applied != len(result.synced_trades):
                logger.warning(
                    "synced_trades_not_charted",
                    synced=len(result.synced_trades),
                    applied=applied,
                )
        return result

    async def run_heartbeat(self, now: int | None = None) -> HeartbeatResult:
        """One heartbeat pass; skipped when no reference price is available."""
        price = await self._price_feed.current_reference_price_usd()
        return await self._aggregator.heartbeat(self._now() if now is None else now, price)

    async def run_price_refresh(self, now: int | None = None) -> int:
        """Re-mark current-bucket USD closes at the latest reference price.

        Raises PriceUnavailableError if no price can be obtained.
        """
        price = await self._price_feed.require_reference_price_usd()
        return await self._aggregator.refresh_close_usd(
            self._now() if now is None else now, price
        )

    async def run_reserve_refresh(self) -> int:
        if self._reserves is None:
            return 0
        return await self._reserves.refresh()

    async def backfill_usd_prices(
        self, asset_id: str | None = None, limit: int | None = None
    ) -> BackfillResult:
        """Give trades without a SOL/USD snapshot the historical price.

        Prices are looked up once per minute bucket. Trades no source can
        price stay as they are and are counted in ``unpriced``. Every asset
        that gained a price is rebuilt so its candles pick up USD values.
        """
        trades = await self._store.get_trades_missing_usd(asset_id, limit)
        result = BackfillResult(checked=len(trades))
        prices: dict[int, Decimal | None] = {}
        touched: set[str] = set()

        for trade in trades:
            minute = trade.created_at - trade.created_at % 60
            if minute not in prices:
                prices[minute] = await self._price_feed.historical_reference_price_usd(minute)
            price = prices[minute]
            if price is None:
                result.unpriced += 1
                continue
            if await self._store.set_trade_sol_price_usd(trade.signature, price):
                result.updated += 1
                touched.add(trade.asset_id)

        if touched:
            result.rebuilt = await self._aggregator.rebuild_all(sorted(touched))
        logger.info(
            "usd_backfill_complete",
            checked=result.checked,
            updated=result.updated,
            unpriced=result.unpriced,
            assets_rebuilt=len(result.rebuilt),
        )
        return result

    async def rebuild_candles(self, asset_ids: Iterable[str] | None = None) -> dict[str, int]:
        """Recompute candles from the trade log (all traded assets by default)."""
        rebuilt = await self._aggregator.rebuild_all(asset_ids)
        logger.info("candle_rebuild_complete", assets=len(rebuilt), candles=sum(rebuilt.values()))
        return rebuilt

    async def reset_trades(self, asset_id: str | None = None) -> int:
        """Administrative reset: delete trades and the candles built from them.

        Returns the number of trades deleted.
        """
        deleted = await self._store.delete_trades(asset_id)
        candles = await self._store.delete_candles(asset_id)
        logger.warning("trade_log_reset", asset_id=asset_id, trades=deleted, candles=candles)
        return deleted
