"""Entry point for the market data harvester.

Wires the engine context together and runs the periodic harvest loop as a
task. SIGINT/SIGTERM stop the runner and cancel the cycle in progress, even
mid-request or mid-wait; every checkpoint stays at its last committed batch.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. BinanceFuturesGateway (ccxt transport)
4. BudgetGovernor (one per process, shared by all symbol tasks)
5. PageFetcher
6. MarketDataStore + BatchWriter (over an open HarvestDatabase)
7. IngestionController
8. HarvestRunner
"""

import asyncio
import signal
import sys
from typing import Any

from harvester.config import AppSettings
from harvester.data.database import HarvestDatabase
from harvester.data.store import MarketDataStore
from harvester.exceptions import HarvesterError
from harvester.exchange.binance_gateway import BinanceFuturesGateway
from harvester.ingestion.budget import BudgetGovernor
from harvester.ingestion.controller import IngestionController
from harvester.ingestion.fetcher import PageFetcher
from harvester.ingestion.writer import BatchWriter
from harvester.logging import get_logger, setup_logging
from harvester.runner import HarvestRunner


def _build_components(settings: AppSettings, database: HarvestDatabase) -> dict[str, Any]:
    """Build the engine context from settings and an open database."""
    gateway = BinanceFuturesGateway(settings.exchange)
    governor = BudgetGovernor(
        max_weight=settings.ingestion.max_weight,
        pacing_delay=settings.ingestion.pacing_delay,
        ban_backoff=settings.ingestion.ban_backoff_seconds,
    )
    fetcher = PageFetcher(gateway, governor, settings.ingestion)
    store = MarketDataStore(database)
    writer = BatchWriter(store)
    controller = IngestionController(fetcher, store, writer, settings.ingestion)
    runner = HarvestRunner(controller, store, settings.ingestion)

    return {
        "gateway": gateway,
        "governor": governor,
        "fetcher": fetcher,
        "store": store,
        "writer": writer,
        "controller": controller,
        "runner": runner,
    }


def _setup_signal_handlers(runner: HarvestRunner, runner_task: asyncio.Task) -> None:
    """Register SIGINT/SIGTERM to stop the runner.

    The first signal stops the runner and cancels the cycle in progress.
    A second one cancels the runner task outright.
    """
    logger = get_logger("harvester.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        if runner.is_running:
            logger.info("graceful_shutdown_signal")
            asyncio.create_task(runner.stop())
        else:
            logger.warning("forced_shutdown_signal")
            runner_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def run() -> int:
    """Run the harvester until stopped. Returns the process exit code."""
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("harvester.main")

    if not settings.exchange.api_key.get_secret_value() and "trades" in settings.ingestion.kinds:
        logger.warning(
            "no_api_key_configured",
            note="historicalTrades requires BINANCE_API_KEY; trade ingestion will fail.",
        )

    async with HarvestDatabase(settings.storage.db_path) as database:
        components = _build_components(settings, database)
        runner: HarvestRunner = components["runner"]

        logger.info(
            "harvester_starting",
            symbols=settings.ingestion.symbols,
            kinds=settings.ingestion.kinds,
            db_path=settings.storage.db_path,
        )
        runner_task = asyncio.create_task(runner.start())
        _setup_signal_handlers(runner, runner_task)
        try:
            await runner_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.warning("harvester_cancelled")
        except HarvesterError as e:
            logger.critical("harvester_failed", error_kind=e.kind.value, error=str(e))
            return 1
        finally:
            await components["gateway"].close()

    logger.info("harvester_stopped")
    return 0


def main() -> None:
    """Synchronous entry point."""
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
