"""Shared test fixtures for the market data harvester."""

import pytest
import pytest_asyncio

from harvester.config import IngestionSettings
from harvester.data.database import HarvestDatabase
from harvester.data.store import MarketDataStore
from harvester.ingestion.budget import BudgetGovernor
from harvester.ingestion.writer import BatchWriter


@pytest.fixture
def ingestion_settings() -> IngestionSettings:
    """Ingestion settings with no pacing and quick retries."""
    return IngestionSettings(
        symbols=["BTCUSDT"],
        candle_page_limit=1500,
        trade_page_limit=1000,
        pacing_delay=0.0,
        max_retries=3,
        retry_base_delay=1.0,
    )


@pytest.fixture
def governor() -> BudgetGovernor:
    """Governor that never paces (zero delay while under budget)."""
    return BudgetGovernor(max_weight=1200, pacing_delay=0.0)


@pytest_asyncio.fixture
async def database():
    """Connected in-memory SQLite database with the harvester schema."""
    db = HarvestDatabase(":memory:")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def store(database: HarvestDatabase) -> MarketDataStore:
    return MarketDataStore(database)


@pytest.fixture
def writer(store: MarketDataStore) -> BatchWriter:
    return BatchWriter(store)
