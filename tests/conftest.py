"""Shared test fixtures for the bonding curve indexer."""

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from indexer.config import AppSettings, CurveSettings, LedgerSettings, StoreSettings
from indexer.data.database import IndexerDatabase
from indexer.data.store import IndexerStore

from factories import PROGRAM_ID


@pytest.fixture
def mock_settings(tmp_path) -> AppSettings:
    """Return AppSettings with test defaults and a throwaway database path."""
    return AppSettings(
        log_level="DEBUG",
        ledger=LedgerSettings(rpc_url="http://rpc.test", program_id=PROGRAM_ID),
        store=StoreSettings(db_path=str(tmp_path / "indexer.db")),
    )


@pytest.fixture
def curve_settings() -> CurveSettings:
    return CurveSettings()


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncIterator[IndexerDatabase]:
    """Connected IndexerDatabase in a temp directory."""
    async with IndexerDatabase(str(tmp_path / "indexer.db")) as db:
        yield db


@pytest_asyncio.fixture
async def store(database: IndexerDatabase) -> IndexerStore:
    return IndexerStore(database)

