"""Durable storage for harvested market data.

Provides SQLite database management and the typed store holding candles,
trades and the per-symbol checkpoints the ingestion engine resumes from.
"""

from harvester.data.database import HarvestDatabase
from harvester.data.store import MarketDataStore

__all__ = ["HarvestDatabase", "MarketDataStore"]
