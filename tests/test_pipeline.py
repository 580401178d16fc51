"""Tests for IndexerPipeline wiring: sync-to-candles, local trades and admin paths."""

import sqlite3
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from indexer.candles.aggregator import CandleAggregator
from indexer.candles.intervals import CandleInterval
from indexer.data.store import IndexerStore
from indexer.exceptions import CurveClosedError, PriceUnavailableError
from indexer.main import _build_components, parse_args
from indexer.models import Asset, SyncResult, TradeSide
from indexer.pipeline import IndexerPipeline

from factories import BASE_TS, MINT_A, make_trade


@pytest.fixture
def price_feed() -> AsyncMock:
    feed = AsyncMock()
    feed.current_reference_price_usd = AsyncMock(return_value=Decimal("100"))
    feed.require_reference_price_usd = AsyncMock(return_value=Decimal("100"))
    return feed


@pytest.fixture
def synchronizer() -> AsyncMock:
    sync = AsyncMock()
    sync.sync = AsyncMock(return_value=SyncResult(success=True))
    return sync


@pytest.fixture
def pipeline(
    store: IndexerStore, synchronizer: AsyncMock, price_feed: AsyncMock
) -> IndexerPipeline:
    return IndexerPipeline(
        synchronizer=synchronizer,
        aggregator=CandleAggregator(store),
        store=store,
        price_feed=price_feed,
        reserves=None,
        clock=lambda: BASE_TS + 65,
    )


class TestRunSync:
    @pytest.mark.asyncio
    async def test_synced_trades_reach_candles_in_time_order(
        self, pipeline: IndexerPipeline, synchronizer: AsyncMock, store: IndexerStore
    ) -> None:
        newer = make_trade("b", "0.0002", "1", created_at=BASE_TS + 30)
        older = make_trade("a", "0.0001", "1", created_at=BASE_TS + 10)
        synchronizer.sync.return_value = SyncResult(
            success=True, checked=2, synced=2, synced_trades=[newer, older]
        )

        result = await pipeline.run_sync(limit=50, asset_filter=MINT_A)

        synchronizer.sync.assert_awaited_once_with(limit=50, asset_filter=MINT_A)
        assert result.synced == 2
        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS)
        assert candle is not None
        assert candle.open == Decimal("0.0001")
        assert candle.close == Decimal("0.0002")
        assert candle.trade_count == 2

    @pytest.mark.asyncio
    async def test_failed_sync_touches_nothing(
        self, pipeline: IndexerPipeline, synchronizer: AsyncMock, store: IndexerStore
    ) -> None:
        synchronizer.sync.return_value = SyncResult(success=False, error="rpc down")
        result = await pipeline.run_sync()
        assert result.success is False
        assert await store.get_candles(MINT_A) == []

    @pytest.mark.asyncio
    async def test_failed_candle_update_is_repaired_next_pass(
        self,
        pipeline: IndexerPipeline,
        synchronizer: AsyncMock,
        store: IndexerStore,
        monkeypatch,
    ) -> None:
        trade = make_trade("a", "0.0001", "1", created_at=BASE_TS + 10)
        await store.insert_trade(trade)
        synchronizer.sync.return_value = SyncResult(
            success=True, checked=1, synced=1, synced_trades=[trade]
        )

        async def locked_update(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        with monkeypatch.context() as patched:
            patched.setattr(store, "update_candle", locked_update)
            await pipeline.run_sync()

        assert await store.get_candles(MINT_A) == []
        assert await store.get_uncharted_assets() == [MINT_A]

        # The trade is no longer new on the next pass
        synchronizer.sync.return_value = SyncResult(success=True, checked=1, skipped=1)
        await pipeline.run_sync()

        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS)
        assert candle is not None
        assert candle.trade_count == 1
        assert len(await store.get_candles(MINT_A)) == 5
        assert await store.get_uncharted_assets() == []



class TestLocalTrades:
    @pytest.mark.asyncio
    async def test_recorded_trade_updates_candles_once(
        self, pipeline: IndexerPipeline, store: IndexerStore
    ) -> None:
        trade = make_trade("local-1", "0.0001", "2", created_at=BASE_TS + 1)

        assert await pipeline.record_local_trade(trade) is True
        assert await pipeline.record_local_trade(trade) is False

        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS)
        assert candle is not None
        assert candle.trade_count == 1
        assert candle.volume == Decimal("2")


class TestScheduledPasses:
    @pytest.mark.asyncio
    async def test_heartbeat_uses_feed_and_clock(
        self, pipeline: IndexerPipeline, store: IndexerStore
    ) -> None:
        await store.register_asset(MINT_A, 1, 1)
        await pipeline.record_local_trade(make_trade("t1", "0.0001", "1", created_at=BASE_TS + 5))

        result = await pipeline.run_heartbeat()

        assert result.reference_price_usd == Decimal("100")
        assert result.created == {MINT_A: [CandleInterval.M1]}

    @pytest.mark.asyncio
    async def test_heartbeat_skipped_without_price(
        self, pipeline: IndexerPipeline, price_feed: AsyncMock
    ) -> None:
        price_feed.current_reference_price_usd.return_value = None
        result = await pipeline.run_heartbeat(now=BASE_TS)
        assert result.skipped is True

    @pytest.mark.asyncio
    async def test_price_refresh_propagates_unavailable(
        self, pipeline: IndexerPipeline, price_feed: AsyncMock
    ) -> None:
        price_feed.require_reference_price_usd.side_effect = PriceUnavailableError("none")
        with pytest.raises(PriceUnavailableError):
            await pipeline.run_price_refresh()

    @pytest.mark.asyncio
    async def test_reserve_refresh_without_refresher(self, pipeline: IndexerPipeline) -> None:
        assert await pipeline.run_reserve_refresh() == 0


class TestUsdBackfill:
    @pytest.mark.asyncio
    async def test_stamps_trades_and_rebuilds_candles(
        self, pipeline: IndexerPipeline, store: IndexerStore, price_feed: AsyncMock
    ) -> None:
        trades = [
            make_trade("a", "0.0001", "1", created_at=BASE_TS + 5),
            make_trade("b", "0.0002", "1", created_at=BASE_TS + 20),
            make_trade("c", "0.0003", "1", created_at=BASE_TS + 70),
            make_trade("d", "0.0004", "1", created_at=BASE_TS + 80, sol_price_usd="140"),
        ]
        for trade in trades:
            await pipeline.record_local_trade(trade)
        prices = {BASE_TS: Decimal("150"), BASE_TS + 60: None}
        price_feed.historical_reference_price_usd = AsyncMock(side_effect=prices.get)

        result = await pipeline.backfill_usd_prices()

        assert (result.checked, result.updated, result.unpriced) == (3, 2, 1)
        assert result.rebuilt == {MINT_A: 6}
        # One lookup per minute bucket
        assert price_feed.historical_reference_price_usd.await_count == 2

        first = await store.get_trade("a")
        assert first is not None and first.sol_price_usd == Decimal("150")
        assert (await store.get_trade("d")).sol_price_usd == Decimal("140")
        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS)
        assert candle is not None
        assert candle.open_usd == Decimal("0.0150")
        assert candle.close_usd == Decimal("0.0300")
        assert [t.signature for t in await store.get_trades_missing_usd()] == ["c"]

    @pytest.mark.asyncio
    async def test_nothing_priced_rebuilds_nothing(
        self, pipeline: IndexerPipeline, store: IndexerStore, price_feed: AsyncMock
    ) -> None:
        await pipeline.record_local_trade(make_trade("a", "0.0001", "1", created_at=BASE_TS))
        price_feed.historical_reference_price_usd = AsyncMock(return_value=None)

        result = await pipeline.backfill_usd_prices(asset_id=MINT_A, limit=10)

        assert (result.checked, result.updated, result.unpriced) == (1, 0, 1)
        assert result.rebuilt == {}


class TestAdmin:
    @pytest.mark.asyncio
    async def test_rebuild_and_reset(self, pipeline: IndexerPipeline, store: IndexerStore) -> None:
        await pipeline.record_local_trade(make_trade("t1", "0.0001", "1", created_at=BASE_TS))
        await store.delete_candles(MINT_A)

        assert await pipeline.rebuild_candles() == {MINT_A: 5}
        assert await pipeline.reset_trades(MINT_A) == 1
        assert await store.get_trades(MINT_A) == []
        assert await store.get_candles(MINT_A) == []


class TestEntryPoint:
    def test_default_command_is_run(self) -> None:
        assert parse_args([]).command == "run"

    def test_sync_arguments(self) -> None:
        args = parse_args(["sync", "--limit", "25", "--asset", MINT_A])
        assert (args.command, args.limit, args.asset) == ("sync", 25, MINT_A)

    def test_rebuild_accepts_repeated_assets(self) -> None:
        args = parse_args(["rebuild-candles", "--asset", "a", "--asset", "b"])
        assert args.asset == ["a", "b"]

    def test_backfill_arguments(self) -> None:
        args = parse_args(["backfill-usd", "--asset", MINT_A, "--limit", "500"])
        assert (args.command, args.asset, args.limit) == ("backfill-usd", MINT_A, 500)
        assert parse_args(["backfill-usd"]).limit is None

    @pytest.mark.asyncio
    async def test_build_components(self, mock_settings, database) -> None:
        components = _build_components(mock_settings, database)
        assert isinstance(components["pipeline"], IndexerPipeline)
        assert isinstance(components["aggregator"], CandleAggregator)
        await components["ledger"].close()
        await components["price_feed"].close()


class TestQuote:
    @pytest.mark.asyncio
    async def test_buy_uses_configured_fee(
        self, pipeline: IndexerPipeline, store: IndexerStore
    ) -> None:
        await store.register_asset(MINT_A, 30_000_000_000, 1_000_000_000_000_000)

        quote = await pipeline.quote(MINT_A, TradeSide.BUY, 1_000_000_000)

        assert quote.fee == 10_000_000
        assert quote.new_virtual_sol == 30_990_000_000
        assert quote.tokens_out > 0

    @pytest.mark.asyncio
    async def test_sell_without_real_sol_is_capped_to_zero(
        self, pipeline: IndexerPipeline, store: IndexerStore
    ) -> None:
        await store.register_asset(MINT_A, 30_000_000_000, 1_000_000_000_000_000)

        quote = await pipeline.quote(MINT_A, TradeSide.SELL, 1_000_000)

        assert quote.capped_by_liquidity is True
        assert quote.tokens_in == 0
        assert quote.requested_tokens_in == 1_000_000

    @pytest.mark.asyncio
    async def test_graduated_curve_rejects_quotes(
        self, pipeline: IndexerPipeline, store: IndexerStore
    ) -> None:
        await store.upsert_asset(
            Asset(MINT_A, 30_000_000_000, 1_000_000_000_000_000, graduated=True)
        )
        with pytest.raises(CurveClosedError):
            await pipeline.quote(MINT_A, TradeSide.BUY, 1_000_000_000)

    @pytest.mark.asyncio
    async def test_unknown_asset(self, pipeline: IndexerPipeline) -> None:
        with pytest.raises(KeyError):
            await pipeline.quote(MINT_A, TradeSide.SELL, 1)
