"""Rate-limited, resumable, cursor-paginated ingestion engine.

Provides the budget governor, page fetcher, boundary classifier, cursor
advancer, batch writer and the controller that drives them.
"""

from harvester.ingestion.boundary import split_candles, split_page, split_trades
from harvester.ingestion.budget import BudgetGovernor
from harvester.ingestion.controller import IngestionController, IngestionState
from harvester.ingestion.cursor import advance, cursor_after, initial_cursor
from harvester.ingestion.fetcher import PageFetcher
from harvester.ingestion.writer import BatchWriter

__all__ = [
    "BatchWriter",
    "BudgetGovernor",
    "IngestionController",
    "IngestionState",
    "PageFetcher",
    "advance",
    "cursor_after",
    "initial_cursor",
    "split_candles",
    "split_page",
    "split_trades",
]
