"""Async SQLite database manager for the off-chain mirror.

Uses aiosqlite for non-blocking database operations with WAL mode so the
scheduled jobs can read while another writes.

Every write goes through transaction(): BEGIN IMMEDIATE takes SQLite's
write lock up front, so a read-modify-write inside it is atomic against
other connections and other processes on the same file. A second writer
waits up to ``busy_timeout`` seconds for the lock.
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Self

import aiosqlite

from indexer.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS assets (
    asset_id TEXT PRIMARY KEY,
    virtual_sol_reserves TEXT NOT NULL,
    virtual_token_reserves TEXT NOT NULL,
    real_sol_reserves TEXT NOT NULL DEFAULT '0',
    real_token_reserves TEXT NOT NULL DEFAULT '0',
    graduated INTEGER NOT NULL DEFAULT 0,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS trades (
    signature TEXT PRIMARY KEY,
    asset_id TEXT NOT NULL,
    trader TEXT NOT NULL,
    side TEXT NOT NULL,
    sol_amount TEXT NOT NULL,
    token_amount TEXT NOT NULL,
    price_sol TEXT NOT NULL,
    protocol_fee TEXT NOT NULL,
    creator_fee TEXT NOT NULL,
    total_fee TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    sol_price_usd TEXT
);

CREATE TABLE IF NOT EXISTS candles (
    asset_id TEXT NOT NULL,
    interval TEXT NOT NULL,
    bucket_time INTEGER NOT NULL,
    open TEXT NOT NULL,
    high TEXT NOT NULL,
    low TEXT NOT NULL,
    close TEXT NOT NULL,
    volume TEXT NOT NULL,
    trade_count INTEGER NOT NULL,
    open_usd TEXT,
    high_usd TEXT,
    low_usd TEXT,
    close_usd TEXT,
    volume_usd TEXT,
    sol_price_usd TEXT,
    PRIMARY KEY (asset_id, interval, bucket_time)
);

CREATE TABLE IF NOT EXISTS uncharted_assets (
    asset_id TEXT PRIMARY KEY,
    marked_at INTEGER NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_trades_asset_created
    ON trades(asset_id, created_at);

CREATE INDEX IF NOT EXISTS idx_assets_graduated
    ON assets(graduated);
"""


class IndexerDatabase:
    """Async SQLite connection manager.

    Usage:
        async with IndexerDatabase("data/indexer.db") as database:
            store = IndexerStore(database)
    """

    def __init__(self, db_path: str = "data/indexer.db", busy_timeout: float = 30.0) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path, timeout=self._busy_timeout)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()
        await self._ensure_schema_version()

        logger.info("indexer_db_connected", db_path=self._db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one immediate write transaction.

        Commits on normal exit and rolls back on any exception. Coroutines
        sharing this connection take turns; other connections block in
        SQLite until the lock is released.
        """
        async with self._write_lock:
            db = self.db
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("indexer_db_closed", db_path=self._db_path)

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)
        elif row[0] != SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema version {row[0]} does not match expected {SCHEMA_VERSION}"
            )

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
