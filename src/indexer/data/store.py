"""Typed SQLite read/write abstraction for assets, trades and candles.

All SQL is isolated behind IndexerStore.

CRITICAL: Decimal values and u64 reserves are stored as TEXT and restored
as Decimal / int on read, so nothing passes through a float.
"""

import time
from collections.abc import Callable, Iterable
from decimal import Decimal

from indexer.candles.intervals import CandleInterval
from indexer.data.database import IndexerDatabase
from indexer.logging import get_logger
from indexer.models import Asset, Candle, Trade, TradeSide

logger = get_logger(__name__)

_TRADE_COLUMNS = (
    "signature, asset_id, trader, side, sol_amount, token_amount, price_sol, "
    "protocol_fee, creator_fee, total_fee, created_at, sol_price_usd"
)

_CANDLE_COLUMNS = (
    "asset_id, interval, bucket_time, open, high, low, close, volume, trade_count, "
    "open_usd, high_usd, low_usd, close_usd, volume_usd, sol_price_usd"
)

_ASSET_COLUMNS = (
    "asset_id, virtual_sol_reserves, virtual_token_reserves, "
    "real_sol_reserves, real_token_reserves, graduated, updated_at"
)


def _text(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _decimal(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)


def _trade_row(trade: Trade) -> tuple:
    return (
        trade.signature,
        trade.asset_id,
        trade.trader,
        trade.side.value,
        str(trade.sol_amount),
        str(trade.token_amount),
        str(trade.price_sol),
        str(trade.protocol_fee),
        str(trade.creator_fee),
        str(trade.total_fee),
        trade.created_at,
        _text(trade.sol_price_usd),
    )


def _trade_from_row(row: tuple) -> Trade:
    return Trade(
        signature=row[0],
        asset_id=row[1],
        trader=row[2],
        side=TradeSide(row[3]),
        sol_amount=Decimal(row[4]),
        token_amount=Decimal(row[5]),
        price_sol=Decimal(row[6]),
        protocol_fee=Decimal(row[7]),
        creator_fee=Decimal(row[8]),
        # row[9] is total_fee, derived on the model
        created_at=row[10],
        sol_price_usd=_decimal(row[11]),
    )


def _candle_row(candle: Candle) -> tuple:
    return (
        candle.asset_id,
        candle.interval.value,
        candle.bucket_time,
        str(candle.open),
        str(candle.high),
        str(candle.low),
        str(candle.close),
        str(candle.volume),
        candle.trade_count,
        _text(candle.open_usd),
        _text(candle.high_usd),
        _text(candle.low_usd),
        _text(candle.close_usd),
        _text(candle.volume_usd),
        _text(candle.sol_price_usd),
    )


def _candle_from_row(row: tuple) -> Candle:
    return Candle(
        asset_id=row[0],
        interval=CandleInterval(row[1]),
        bucket_time=row[2],
        open=Decimal(row[3]),
        high=Decimal(row[4]),
        low=Decimal(row[5]),
        close=Decimal(row[6]),
        volume=Decimal(row[7]),
        trade_count=row[8],
        open_usd=_decimal(row[9]),
        high_usd=_decimal(row[10]),
        low_usd=_decimal(row[11]),
        close_usd=_decimal(row[12]),
        volume_usd=_decimal(row[13]),
        sol_price_usd=_decimal(row[14]),
    )


def _asset_from_row(row: tuple) -> Asset:
    return Asset(
        asset_id=row[0],
        virtual_sol_reserves=int(row[1]),
        virtual_token_reserves=int(row[2]),
        real_sol_reserves=int(row[3]),
        real_token_reserves=int(row[4]),
        graduated=bool(row[5]),
        updated_at=row[6],
    )


class IndexerStore:
    """Async SQLite store for the mirrored market.

    Trades are append-only and unique on signature; that uniqueness is what
    makes concurrent synchronizer runs safe. Candles are unique on
    (asset_id, interval, bucket_time).

    Usage:
        async with IndexerDatabase("data/indexer.db") as database:
            store = IndexerStore(database)
            inserted = await store.insert_trade(trade)
    """

    def __init__(self, database: IndexerDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Assets
    # ──────────────────────────────────────────────

    async def register_asset(
        self,
        asset_id: str,
        virtual_sol_reserves: int,
        virtual_token_reserves: int,
    ) -> bool:
        """Insert a minimal asset row if unknown. Returns True if inserted.

        Real reserves start at zero until the reserve refresher reads the
        curve account.
        """
        async with self._database.transaction() as db:
            cursor = await db.execute(
                f"INSERT OR IGNORE INTO assets ({_ASSET_COLUMNS}) "
                "VALUES (?, ?, ?, '0', '0', 0, ?)",
                (
                    asset_id,
                    str(virtual_sol_reserves),
                    str(virtual_token_reserves),
                    int(time.time()),
                ),
            )
        return cursor.rowcount > 0

    async def upsert_asset(self, asset: Asset) -> None:
        """Write full curve state. ``graduated`` never goes back to 0."""
        async with self._database.transaction() as db:
            await db.execute(
                f"INSERT INTO assets ({_ASSET_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(asset_id) DO UPDATE SET "
                "virtual_sol_reserves = excluded.virtual_sol_reserves, "
                "virtual_token_reserves = excluded.virtual_token_reserves, "
                "real_sol_reserves = excluded.real_sol_reserves, "
                "real_token_reserves = excluded.real_token_reserves, "
                "graduated = MAX(assets.graduated, excluded.graduated), "
                "updated_at = excluded.updated_at",
                (
                    asset.asset_id,
                    str(asset.virtual_sol_reserves),
                    str(asset.virtual_token_reserves),
                    str(asset.real_sol_reserves),
                    str(asset.real_token_reserves),
                    1 if asset.graduated else 0,
                    asset.updated_at or int(time.time()),
                ),
            )

    async def get_asset(self, asset_id: str) -> Asset | None:
        cursor = await self._database.db.execute(
            f"SELECT {_ASSET_COLUMNS} FROM assets WHERE asset_id = ?",
            (asset_id,),
        )
        row = await cursor.fetchone()
        return None if row is None else _asset_from_row(row)

    async def get_assets(self, active_only: bool = True) -> list[Asset]:
        """All known assets; ``active_only`` drops graduated curves."""
        query = f"SELECT {_ASSET_COLUMNS} FROM assets"
        if active_only:
            query += " WHERE graduated = 0"
        query += " ORDER BY asset_id"
        cursor = await self._database.db.execute(query)
        return [_asset_from_row(row) for row in await cursor.fetchall()]

    # ──────────────────────────────────────────────
    # Trades
    # ──────────────────────────────────────────────

    async def trade_exists(self, signature: str) -> bool:
        cursor = await self._database.db.execute(
            "SELECT 1 FROM trades WHERE signature = ? LIMIT 1",
            (signature,),
        )
        return await cursor.fetchone() is not None

    async def insert_trade(self, trade: Trade) -> bool:
        """Append a trade. Returns False if the signature was already present."""
        async with self._database.transaction() as db:
            cursor = await db.execute(
                f"INSERT OR IGNORE INTO trades ({_TRADE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _trade_row(trade),
            )
        inserted = cursor.rowcount > 0
        if not inserted:
            logger.debug("duplicate_trade_ignored", signature=trade.signature)
        return inserted

    async def get_trade(self, signature: str) -> Trade | None:
        cursor = await self._database.db.execute(
            f"SELECT {_TRADE_COLUMNS} FROM trades WHERE signature = ?",
            (signature,),
        )
        row = await cursor.fetchone()
        return None if row is None else _trade_from_row(row)

    async def get_trades(
        self,
        asset_id: str,
        since: int | None = None,
        until: int | None = None,
    ) -> list[Trade]:
        """Trades for an asset, oldest first (ties broken by signature)."""
        conditions = ["asset_id = ?"]
        params: list = [asset_id]

        if since is not None:
            conditions.append("created_at >= ?")
            params.append(since)
        if until is not None:
            conditions.append("created_at <= ?")
            params.append(until)

        where = " AND ".join(conditions)
        cursor = await self._database.db.execute(
            f"SELECT {_TRADE_COLUMNS} FROM trades WHERE {where} "
            "ORDER BY created_at ASC, signature ASC",
            params,
        )
        return [_trade_from_row(row) for row in await cursor.fetchall()]

    async def get_trades_missing_usd(
        self, asset_id: str | None = None, limit: int | None = None
    ) -> list[Trade]:
        """Trades with no SOL/USD snapshot, oldest first."""
        query = f"SELECT {_TRADE_COLUMNS} FROM trades WHERE sol_price_usd IS NULL"
        params: list = []
        if asset_id is not None:
            query += " AND asset_id = ?"
            params.append(asset_id)
        query += " ORDER BY created_at ASC, signature ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = await self._database.db.execute(query, params)
        return [_trade_from_row(row) for row in await cursor.fetchall()]

    async def set_trade_sol_price_usd(self, signature: str, sol_price_usd: Decimal) -> bool:
        """Stamp a missing SOL/USD snapshot. Never overwrites an existing one."""
        async with self._database.transaction() as db:
            cursor = await db.execute(
                "UPDATE trades SET sol_price_usd = ? "
                "WHERE signature = ? AND sol_price_usd IS NULL",
                (str(sol_price_usd), signature),
            )
        return cursor.rowcount > 0

    async def get_last_trade(self, asset_id: str) -> Trade | None:
        """Most recent trade by ledger time, not by insertion order."""
        cursor = await self._database.db.execute(
            f"SELECT {_TRADE_COLUMNS} FROM trades WHERE asset_id = ? "
            "ORDER BY created_at DESC, signature DESC LIMIT 1",
            (asset_id,),
        )
        row = await cursor.fetchone()
        return None if row is None else _trade_from_row(row)

    async def get_traded_asset_ids(self) -> list[str]:
        cursor = await self._database.db.execute(
            "SELECT DISTINCT asset_id FROM trades ORDER BY asset_id"
        )
        return [row[0] for row in await cursor.fetchall()]

    async def delete_trades(self, asset_id: str | None = None) -> int:
        """Administrative reset of the trade log (all assets when None)."""
        async with self._database.transaction() as db:
            if asset_id is None:
                cursor = await db.execute("DELETE FROM trades")
            else:
                cursor = await db.execute("DELETE FROM trades WHERE asset_id = ?", (asset_id,))
        logger.warning("trades_deleted", asset_id=asset_id, count=cursor.rowcount)
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Candles
    # ──────────────────────────────────────────────

    async def get_candle(
        self, asset_id: str, interval: CandleInterval, bucket_time: int
    ) -> Candle | None:
        cursor = await self._database.db.execute(
            f"SELECT {_CANDLE_COLUMNS} FROM candles "
            "WHERE asset_id = ? AND interval = ? AND bucket_time = ?",
            (asset_id, interval.value, bucket_time),
        )
        row = await cursor.fetchone()
        return None if row is None else _candle_from_row(row)

    async def get_latest_candle(
        self,
        asset_id: str,
        interval: CandleInterval,
        before: int | None = None,
    ) -> Candle | None:
        """Newest candle for the series, optionally strictly before a bucket."""
        conditions = ["asset_id = ?", "interval = ?"]
        params: list = [asset_id, interval.value]
        if before is not None:
            conditions.append("bucket_time < ?")
            params.append(before)

        where = " AND ".join(conditions)
        cursor = await self._database.db.execute(
            f"SELECT {_CANDLE_COLUMNS} FROM candles WHERE {where} "
            "ORDER BY bucket_time DESC LIMIT 1",
            params,
        )
        row = await cursor.fetchone()
        return None if row is None else _candle_from_row(row)

    async def save_candle(self, candle: Candle) -> None:
        """Write a candle, replacing any row with the same key."""
        async with self._database.transaction() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO candles ({_CANDLE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _candle_row(candle),
            )

    async def update_candle(
        self,
        asset_id: str,
        interval: CandleInterval,
        bucket_time: int,
        update: Callable[[Candle | None], Candle | None],
    ) -> Candle | None:
        """Atomic read-modify-write of one bucket.

        ``update`` receives the stored candle (None for an empty bucket) and
        returns the candle to write, or None to leave the bucket alone. The
        read and the write share one immediate transaction, so writers on
        other connections cannot interleave. If ``update`` raises, nothing
        is written and the exception propagates.
        """
        async with self._database.transaction() as db:
            cursor = await db.execute(
                f"SELECT {_CANDLE_COLUMNS} FROM candles "
                "WHERE asset_id = ? AND interval = ? AND bucket_time = ?",
                (asset_id, interval.value, bucket_time),
            )
            row = await cursor.fetchone()
            candle = update(None if row is None else _candle_from_row(row))
            if candle is not None:
                await db.execute(
                    f"INSERT OR REPLACE INTO candles ({_CANDLE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _candle_row(candle),
                )
        return candle

    async def insert_candle_if_absent(self, candle: Candle) -> bool:
        """Insert only if the bucket is empty. Never overwrites an existing candle."""
        async with self._database.transaction() as db:
            cursor = await db.execute(
                f"INSERT OR IGNORE INTO candles ({_CANDLE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _candle_row(candle),
            )
        return cursor.rowcount > 0

    async def rebuild_candles(
        self,
        asset_id: str,
        fold: Callable[[list[Trade]], Iterable[Candle]],
    ) -> tuple[int, int]:
        """Replace every candle of an asset with ``fold`` of its trade log.

        Reading the trades, swapping the candles and clearing the asset's
        uncharted mark happen in one immediate transaction, so a trade
        applied concurrently is either in the log being folded or applied
        after the swap.

        Returns:
            (trades read, candles written).
        """
        async with self._database.transaction() as db:
            cursor = await db.execute(
                f"SELECT {_TRADE_COLUMNS} FROM trades WHERE asset_id = ? "
                "ORDER BY created_at ASC, signature ASC",
                (asset_id,),
            )
            trades = [_trade_from_row(row) for row in await cursor.fetchall()]
            rows = [_candle_row(c) for c in fold(trades)]
            await db.execute("DELETE FROM candles WHERE asset_id = ?", (asset_id,))
            if rows:
                await db.executemany(
                    f"INSERT INTO candles ({_CANDLE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
            await db.execute("DELETE FROM uncharted_assets WHERE asset_id = ?", (asset_id,))
        return len(trades), len(rows)

    async def mark_uncharted(self, asset_id: str) -> None:
        """Flag an asset whose candles may no longer match its trade log."""
        async with self._database.transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO uncharted_assets (asset_id, marked_at) VALUES (?, ?)",
                (asset_id, int(time.time())),
            )
        logger.warning("asset_marked_uncharted", asset_id=asset_id)

    async def get_uncharted_assets(self) -> list[str]:
        cursor = await self._database.db.execute(
            "SELECT asset_id FROM uncharted_assets ORDER BY marked_at, asset_id"
        )
        return [row[0] for row in await cursor.fetchall()]

    async def delete_candles(self, asset_id: str | None = None) -> int:
        async with self._database.transaction() as db:
            if asset_id is None:
                cursor = await db.execute("DELETE FROM candles")
            else:
                cursor = await db.execute("DELETE FROM candles WHERE asset_id = ?", (asset_id,))
        return cursor.rowcount

    async def get_candles(
        self,
        asset_id: str,
        interval: CandleInterval | None = None,
        since: int | None = None,
        limit: int | None = None,
    ) -> list[Candle]:
        """Candles oldest first; all intervals when ``interval`` is None.

        With ``limit`` the newest ``limit`` buckets of each interval are
        returned, still in ascending order.
        """
        conditions = ["asset_id = ?"]
        params: list = [asset_id]
        if interval is not None:
            conditions.append("interval = ?")
            params.append(interval.value)
        if since is not None:
            conditions.append("bucket_time >= ?")
            params.append(since)

        where = " AND ".join(conditions)
        query = f"SELECT {_CANDLE_COLUMNS} FROM candles WHERE {where}"
        if limit is not None:
            query = (
                f"SELECT {_CANDLE_COLUMNS} FROM ("
                f"SELECT {_CANDLE_COLUMNS}, ROW_NUMBER() OVER ("
                "PARTITION BY interval ORDER BY bucket_time DESC) AS recency "
                f"FROM candles WHERE {where}) WHERE recency <= ?"
            )
            params.append(limit)

        cursor = await self._database.db.execute(query, params)
        candles = [_candle_from_row(row) for row in await cursor.fetchall()]
        candles.sort(key=lambda c: (c.interval.value, c.bucket_time))
        return candles

    # ──────────────────────────────────────────────
    # Status
    # ──────────────────────────────────────────────

    async def get_data_status(self) -> dict:
        """Row counts and the newest trade time, for startup/ops logging."""
        db = self._database.db

        cursor = await db.execute("SELECT COUNT(*) FROM assets WHERE graduated = 0")
        active_assets = (await cursor.fetchone())[0]

        cursor = await db.execute("SELECT COUNT(*), MAX(created_at) FROM trades")
        total_trades, latest_trade_at = await cursor.fetchone()

        cursor = await db.execute("SELECT COUNT(*) FROM candles")
        total_candles = (await cursor.fetchone())[0]

        return {
            "active_assets": active_assets,
            "total_trades": total_trades,
            "total_candles": total_candles,
            "latest_trade_at": latest_trade_at,
        }
