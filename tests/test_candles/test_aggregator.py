"""Tests for candle folding, the aggregator and heartbeat candles."""

import asyncio
from decimal import Decimal

import pytest

from indexer.candles.aggregator import CandleAggregator
from indexer.candles.intervals import ALL_INTERVALS, CandleInterval, bucket_time
from indexer.candles.ohlcv import check_candle_invariants, fold_trade, make_heartbeat_candle
from indexer.data.database import IndexerDatabase
from indexer.data.store import IndexerStore
from indexer.exceptions import InvariantViolation
from indexer.models import Asset, Candle

from factories import BASE_TS, MINT_A, MINT_B, make_trade


@pytest.fixture
def aggregator(store: IndexerStore) -> CandleAggregator:
    return CandleAggregator(store)


async def seed_trades(store: IndexerStore, trades) -> None:
    for trade in trades:
        await store.insert_trade(trade)


def snapshot(candles: list[Candle]) -> list[tuple]:
    return sorted(
        (
            c.interval.value,
            c.bucket_time,
            c.open,
            c.high,
            c.low,
            c.close,
            c.volume,
            c.trade_count,
            c.open_usd,
            c.high_usd,
            c.low_usd,
            c.close_usd,
            c.volume_usd,
        )
        for c in candles
    )


# ---------------------------------------------------------------------------
# Intervals and pure folding
# ---------------------------------------------------------------------------


class TestIntervals:
    def test_periods(self) -> None:
        assert [i.seconds for i in ALL_INTERVALS] == [60, 300, 900, 3600, 86400]

    def test_bucket_time_floors_to_period(self) -> None:
        assert bucket_time(BASE_TS + 59, CandleInterval.M1) == BASE_TS
        assert bucket_time(BASE_TS + 60, CandleInterval.M1) == BASE_TS + 60
        assert bucket_time(BASE_TS + 899, CandleInterval.M15) == BASE_TS
        assert bucket_time(BASE_TS, CandleInterval.D1) == BASE_TS - 79_200


class TestFoldTrade:
    KEY = (MINT_A, CandleInterval.M1, BASE_TS)

    def test_first_trade_creates_flat_candle(self) -> None:
        candle = fold_trade(None, self.KEY, Decimal("0.0001"), Decimal("2"))
        assert candle.open == candle.high == candle.low == candle.close == Decimal("0.0001")
        assert candle.volume == Decimal("2")
        assert candle.trade_count == 1
        assert candle.open_usd is None

    def test_open_never_changes(self) -> None:
        first = fold_trade(None, self.KEY, Decimal("0.0001"), Decimal("1"))
        second = fold_trade(first, self.KEY, Decimal("0.0005"), Decimal("1"))
        assert second.open == Decimal("0.0001")
        assert first.close == Decimal("0.0001")

    def test_open_usd_set_by_first_usd_trade(self) -> None:
        first = fold_trade(None, self.KEY, Decimal("0.0001"), Decimal("1"))
        second = fold_trade(first, self.KEY, Decimal("0.0002"), Decimal("1"), Decimal("100"))
        third = fold_trade(second, self.KEY, Decimal("0.0001"), Decimal("1"), Decimal("100"))

        assert second.open_usd == Decimal("0.0200")
        assert third.open_usd == Decimal("0.0200")
        assert third.low_usd == Decimal("0.0100")
        assert third.high_usd == Decimal("0.0200")
        assert third.close_usd == Decimal("0.0100")
        assert third.volume_usd == Decimal("200")

    def test_invariant_check_rejects_inverted_range(self) -> None:
        bad = fold_trade(None, self.KEY, Decimal("1"), Decimal("1"))
        bad.high = Decimal("0.5")
        with pytest.raises(InvariantViolation):
            check_candle_invariants(bad)

    def test_invariant_check_rejects_shrinking_volume(self) -> None:
        before = fold_trade(None, self.KEY, Decimal("1"), Decimal("5"))
        after = fold_trade(before, self.KEY, Decimal("1"), Decimal("1"))
        after.volume = Decimal("4")
        with pytest.raises(InvariantViolation):
            check_candle_invariants(after, before)


class TestHeartbeatCandle:
    KEY = (MINT_A, CandleInterval.M1, BASE_TS + 60)

    def test_flat_sol_and_ratio_usd(self) -> None:
        previous = Candle(
            asset_id=MINT_A,
            interval=CandleInterval.M1,
            bucket_time=BASE_TS,
            open=Decimal("0.0001"),
            high=Decimal("0.0001"),
            low=Decimal("0.0001"),
            close=Decimal("0.0001"),
            volume=Decimal("1"),
            trade_count=1,
            close_usd=Decimal("0.0100"),
            sol_price_usd=Decimal("100"),
        )
        candle = make_heartbeat_candle(self.KEY, Decimal("0.0001"), Decimal("110"), previous)

        assert candle.open == candle.high == candle.low == candle.close == Decimal("0.0001")
        assert candle.volume == Decimal("0")
        assert candle.trade_count == 0
        assert candle.open_usd == Decimal("0.0100")
        assert candle.close_usd == Decimal("0.0110")
        assert candle.high_usd == Decimal("0.0110")
        assert candle.low_usd == Decimal("0.0100")
        assert candle.sol_price_usd == Decimal("110")

    def test_without_previous_candle(self) -> None:
        candle = make_heartbeat_candle(self.KEY, Decimal("0.0002"), Decimal("100"), None)
        assert candle.open_usd == candle.close_usd == Decimal("0.0200")
        assert candle.high_usd == candle.low_usd == Decimal("0.0200")


# ---------------------------------------------------------------------------
# Aggregator: incremental updates
# ---------------------------------------------------------------------------


class TestApplyTrade:
    @pytest.mark.asyncio
    async def test_three_trades_one_minute(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        for price, volume, offset in (("0.0001", "1", 5), ("0.00012", "2", 20), ("0.00009", "0.5", 40)):
            await aggregator.apply_trade(MINT_A, Decimal(price), Decimal(volume), BASE_TS + offset)

        candles = await store.get_candles(MINT_A, CandleInterval.M1)
        assert len(candles) == 1
        candle = candles[0]
        assert candle.bucket_time == BASE_TS
        assert candle.open == Decimal("0.0001")
        assert candle.high == Decimal("0.00012")
        assert candle.low == Decimal("0.00009")
        assert candle.close == Decimal("0.00009")
        assert candle.volume == Decimal("3.5")
        assert candle.trade_count == 3

    @pytest.mark.asyncio
    async def test_every_interval_updated(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        written = await aggregator.apply_trade(MINT_A, Decimal("0.0001"), Decimal("1"), BASE_TS)
        assert {c.interval for c in written} == set(ALL_INTERVALS)
        assert len(await store.get_candles(MINT_A)) == 5

    @pytest.mark.asyncio
    async def test_new_bucket_per_minute(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        await aggregator.apply_trade(MINT_A, Decimal("0.0001"), Decimal("1"), BASE_TS)
        await aggregator.apply_trade(MINT_A, Decimal("0.0002"), Decimal("1"), BASE_TS + 60)

        assert len(await store.get_candles(MINT_A, CandleInterval.M1)) == 2
        hourly = await store.get_candles(MINT_A, CandleInterval.H1)
        assert len(hourly) == 1
        assert hourly[0].trade_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_updates_lose_nothing(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        prices = [Decimal(p) for p in ("0.0001", "0.0003", "0.00005", "0.0002", "0.00015")]
        await asyncio.gather(
            *(aggregator.apply_trade(MINT_A, p, Decimal("1"), BASE_TS + 1) for p in prices)
        )

        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS)
        assert candle is not None
        assert candle.trade_count == 5
        assert candle.volume == Decimal("5")
        assert candle.high == Decimal("0.0003")
        assert candle.low == Decimal("0.00005")

    @pytest.mark.asyncio
    async def test_two_connections_lose_nothing(self, tmp_path) -> None:
        path = str(tmp_path / "shared.db")
        async with IndexerDatabase(path) as first, IndexerDatabase(path) as second:
            aggregators = [
                CandleAggregator(IndexerStore(first)),
                CandleAggregator(IndexerStore(second)),
            ]
            await asyncio.gather(
                *(
                    aggregators[i % 2].apply_trade(
                        MINT_A, Decimal("0.0001") * (i + 1), Decimal("1"), BASE_TS + i
                    )
                    for i in range(10)
                )
            )
            store = IndexerStore(first)
            minute = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS)
            daily = await store.get_candle(MINT_A, CandleInterval.D1, BASE_TS - 79_200)
            uncharted = await store.get_uncharted_assets()

        assert minute is not None and daily is not None
        assert minute.trade_count == daily.trade_count == 10
        assert minute.volume == Decimal("10")
        assert minute.high == Decimal("0.0010")
        assert minute.low == Decimal("0.0001")
        assert uncharted == []

    @pytest.mark.asyncio
    async def test_rejects_non_positive_price(self, aggregator: CandleAggregator) -> None:
        with pytest.raises(ValueError):
            await aggregator.apply_trade(MINT_A, Decimal("0"), Decimal("1"), BASE_TS)

    @pytest.mark.asyncio
    async def test_corrupt_bucket_aborted_others_updated(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        corrupt = Candle(
            asset_id=MINT_A,
            interval=CandleInterval.M1,
            bucket_time=BASE_TS,
            open=Decimal("5"),
            high=Decimal("1"),
            low=Decimal("1"),
            close=Decimal("1"),
            volume=Decimal("1"),
            trade_count=1,
        )
        await store.save_candle(corrupt)

        with pytest.raises(InvariantViolation):
            await aggregator.apply_trade(MINT_A, Decimal("2"), Decimal("1"), BASE_TS)

        assert await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS) == corrupt
        assert await store.get_candle(MINT_A, CandleInterval.M5, BASE_TS) is not None
        assert await store.get_uncharted_assets() == [MINT_A]

    @pytest.mark.asyncio
    async def test_apply_trades_sorts_by_time(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        trades = [
            make_trade("late", "0.0003", "1", created_at=BASE_TS + 30),
            make_trade("early", "0.0001", "1", created_at=BASE_TS + 10),
        ]
        assert await aggregator.apply_trades(trades) == 2

        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS)
        assert candle is not None
        assert candle.open == Decimal("0.0001")
        assert candle.close == Decimal("0.0003")


# ---------------------------------------------------------------------------
# Aggregator: rebuild
# ---------------------------------------------------------------------------


class TestRebuild:
    TRADES = [
        make_trade("t1", "0.0001", "1", created_at=BASE_TS + 5, sol_price_usd="150"),
        make_trade("t2", "0.00012", "2", created_at=BASE_TS + 20),
        make_trade("t3", "0.00009", "0.5", created_at=BASE_TS + 70, sol_price_usd="151"),
        make_trade("t4", "0.00011", "3", created_at=BASE_TS + 400, sol_price_usd="149.5"),
        make_trade("t5", "0.00013", "0.25", created_at=BASE_TS + 4000, sol_price_usd="150"),
    ]

    @pytest.mark.asyncio
    async def test_rebuild_matches_incremental(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        await seed_trades(store, self.TRADES)
        await aggregator.apply_trades(self.TRADES)
        incremental = snapshot(await store.get_candles(MINT_A))

        rebuilt = await aggregator.rebuild_all()
        assert rebuilt == {MINT_A: len(incremental)}
        assert snapshot(await store.get_candles(MINT_A)) == incremental

    @pytest.mark.asyncio
    async def test_rebuild_repairs_corrupt_candles(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        await seed_trades(store, self.TRADES)
        await aggregator.apply_trades(self.TRADES)
        expected = snapshot(await store.get_candles(MINT_A))

        await store.delete_candles(MINT_A)
        await aggregator.apply_trades(self.TRADES[:2])
        await aggregator.rebuild_all([MINT_A])

        assert snapshot(await store.get_candles(MINT_A)) == expected

    @pytest.mark.asyncio
    async def test_repair_uncharted_rebuilds_marked_assets_only(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        await seed_trades(store, self.TRADES)
        await store.insert_trade(make_trade("b1", "0.5", "1", asset_id=MINT_B))
        await store.mark_uncharted(MINT_A)

        assert await aggregator.repair_uncharted() == {MINT_A: 12}
        assert await store.get_uncharted_assets() == []
        assert await store.get_candles(MINT_B) == []
        assert await aggregator.repair_uncharted() == {}

    @pytest.mark.asyncio
    async def test_failed_repair_keeps_mark(
        self, aggregator: CandleAggregator, store: IndexerStore, monkeypatch
    ) -> None:
        await seed_trades(store, self.TRADES)
        await store.mark_uncharted(MINT_A)

        async def broken_rebuild(asset_id, fold):
            raise RuntimeError("disk error")

        monkeypatch.setattr(store, "rebuild_candles", broken_rebuild)
        assert await aggregator.repair_uncharted() == {}
        assert await store.get_uncharted_assets() == [MINT_A]

    @pytest.mark.asyncio
    async def test_one_asset_failure_does_not_stop_others(
        self, aggregator: CandleAggregator, store: IndexerStore, monkeypatch
    ) -> None:
        await seed_trades(store, self.TRADES)
        await store.insert_trade(make_trade("b1", "0.5", "1", asset_id=MINT_B))

        original = store.rebuild_candles

        async def flaky_rebuild(asset_id, fold):
            if asset_id == MINT_A:
                raise RuntimeError("disk error")
            return await original(asset_id, fold)

        monkeypatch.setattr(store, "rebuild_candles", flaky_rebuild)
        rebuilt = await aggregator.rebuild_all()

        assert MINT_A not in rebuilt
        assert rebuilt[MINT_B] == 5


# ---------------------------------------------------------------------------
# Aggregator: heartbeat and USD refresh
# ---------------------------------------------------------------------------


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_skipped_without_reference_price(self, aggregator: CandleAggregator) -> None:
        result = await aggregator.heartbeat(BASE_TS, None)
        assert result.skipped is True
        assert result.candles_created == 0

    @pytest.mark.asyncio
    async def test_fills_quiet_buckets_once(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        trade = make_trade("t1", "0.0001", "1", created_at=BASE_TS + 5, sol_price_usd="100")
        await store.register_asset(MINT_A, 1, 1)
        await store.insert_trade(trade)
        await aggregator.apply_trades([trade])

        now = BASE_TS + 65
        first = await aggregator.heartbeat(now, Decimal("110"))
        second = await aggregator.heartbeat(now, Decimal("120"))

        # 5m/15m/1h/1d buckets still hold the trade; only 1m is new
        assert first.created == {MINT_A: [CandleInterval.M1]}
        assert second.candles_created == 0

        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS + 60)
        assert candle is not None
        assert candle.trade_count == 0
        assert candle.volume == Decimal("0")
        assert candle.close == Decimal("0.0001")
        assert candle.open_usd == Decimal("0.0100")
        assert candle.close_usd == Decimal("0.0110")
        assert candle.high_usd == Decimal("0.0110")
        assert candle.low_usd == Decimal("0.0100")

    @pytest.mark.asyncio
    async def test_never_overwrites_trade_candle(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        trade = make_trade("t1", "0.0001", "1", created_at=BASE_TS + 5)
        await store.register_asset(MINT_A, 1, 1)
        await store.insert_trade(trade)
        await aggregator.apply_trades([trade])
        before = snapshot(await store.get_candles(MINT_A))

        result = await aggregator.heartbeat(BASE_TS + 30, Decimal("100"))

        assert result.candles_created == 0
        assert snapshot(await store.get_candles(MINT_A)) == before

    @pytest.mark.asyncio
    async def test_skips_graduated_and_untraded_assets(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        await store.upsert_asset(Asset(MINT_A, 1, 1, graduated=True, updated_at=1))
        await store.insert_trade(make_trade("t1", "0.0001", "1", created_at=BASE_TS))
        await store.register_asset(MINT_B, 1, 1)

        result = await aggregator.heartbeat(BASE_TS + 600, Decimal("100"))

        assert result.candles_created == 0
        assert await store.get_candles(MINT_A) == []
        assert await store.get_candles(MINT_B) == []

    @pytest.mark.asyncio
    async def test_trade_after_heartbeat_folds_in(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        first = make_trade("t1", "0.0001", "1", created_at=BASE_TS + 5, sol_price_usd="100")
        await store.register_asset(MINT_A, 1, 1)
        await store.insert_trade(first)
        await aggregator.apply_trades([first])
        await aggregator.heartbeat(BASE_TS + 60, Decimal("100"))

        await aggregator.apply_trade(
            MINT_A, Decimal("0.0002"), Decimal("1"), BASE_TS + 70, Decimal("100")
        )

        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS + 60)
        assert candle is not None
        assert candle.open == Decimal("0.0001")
        assert candle.close == Decimal("0.0002")
        assert candle.trade_count == 1


class TestRefreshAndReads:
    @pytest.mark.asyncio
    async def test_refresh_close_usd(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        trade = make_trade("t1", "0.0001", "1", created_at=BASE_TS + 5, sol_price_usd="100")
        await store.register_asset(MINT_A, 1, 1)
        await store.insert_trade(trade)
        await aggregator.apply_trades([trade])

        updated = await aggregator.refresh_close_usd(BASE_TS + 30, Decimal("120"))

        assert updated == 5
        candle = await store.get_candle(MINT_A, CandleInterval.M1, BASE_TS)
        assert candle is not None
        assert candle.close_usd == Decimal("0.0120")
        assert candle.high_usd == Decimal("0.0120")
        assert candle.low_usd == Decimal("0.0100")
        assert candle.close == Decimal("0.0001")

    @pytest.mark.asyncio
    async def test_usd_candles_fall_back_to_sol(
        self, aggregator: CandleAggregator, store: IndexerStore
    ) -> None:
        await aggregator.apply_trade(MINT_A, Decimal("0.0001"), Decimal("1"), BASE_TS)
        await aggregator.apply_trade(
            MINT_A, Decimal("0.0002"), Decimal("1"), BASE_TS + 60, Decimal("100")
        )

        bars = await aggregator.get_usd_candles(MINT_A, CandleInterval.M1)
        assert [b["time"] for b in bars] == [BASE_TS, BASE_TS + 60]
        assert bars[0]["close"] == Decimal("0.0001")
        assert bars[0]["volume"] == Decimal("0")
        assert bars[1]["close"] == Decimal("0.0200")

        sol = await aggregator.get_candles(MINT_A, CandleInterval.M1, limit=1)
        assert [c.bucket_time for c in sol] == [BASE_TS + 60]
