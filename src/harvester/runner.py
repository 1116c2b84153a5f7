"""Periodic harvest runner.

Re-invokes the ingestion controller for every configured (symbol, kind) pair
on a fixed interval, which is how the harvester keeps tailing live data.
Between cycles it applies the error policy table:

- RETRY errors that outlived the fetcher's backoff: try again next cycle
- STOP (rate limit / IP ban): wait ban_backoff_seconds, or the server's
  Retry-After when that is longer, before the next cycle
- ABORT (protocol or persistence failure): stop the runner and re-raise

stop() cancels a cycle that is still running. Each batch commits atomically, so
a cancelled cycle leaves every checkpoint at its last committed batch.
"""

import asyncio

from harvester.config import IngestionSettings
from harvester.data.store import MarketDataStore
from harvester.exceptions import ErrorPolicy, HarvesterError
from harvester.ingestion.controller import IngestionController
from harvester.logging import get_logger
from harvester.models import DataKind, RunResult

logger = get_logger(__name__)

CycleResults = dict[tuple[str, DataKind], RunResult | HarvesterError]


class HarvestRunner:
    """Drives harvest cycles until stopped or until an ABORT-policy error.

    Args:
        controller: Ingestion controller shared by all symbol tasks.
        store: Used to discover already-harvested symbols when none are configured.
        settings: Symbols, kinds, poll interval and ban backoff.
    """

    def __init__(
        self,
        controller: IngestionController,
        store: MarketDataStore,
        settings: IngestionSettings,
    ) -> None:
        self._controller = controller
        self._store = store
        self._settings = settings
        self._running = False
        self._stop_event = asyncio.Event()
        self._cycles = 0
        self._cycle_task: asyncio.Task[CycleResults] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycles(self) -> int:
        return self._cycles

    async def start(self) -> None:
        """Run cycles until stop() is called.

        Raises the first ABORT-policy HarvesterError of a cycle.
        """
        self._running = True
        self._stop_event.clear()
        logger.info("harvest_runner_starting", kinds=self._settings.kinds)
        try:
            while self._running:
                self._cycle_task = asyncio.create_task(self.run_cycle())
                try:
                    results = await self._cycle_task
                except asyncio.CancelledError:
                    if self._running:
                        raise
                    logger.info("harvest_cycle_cancelled")
                    break
                finally:
                    self._cycle_task = None
                delay = self.next_delay(results)
                await self._sleep(delay)
        finally:
            self._running = False
            logger.info("harvest_runner_stopped", cycles=self._cycles)

    async def stop(self) -> None:
        """Stop the runner, cancelling the cycle in progress if there is one."""
        logger.info("harvest_runner_stopping")
        self._running = False
        self._stop_event.set()
        if self._cycle_task is not None and not self._cycle_task.done():
            self._cycle_task.cancel()

    async def resolve_symbols(self) -> list[str]:
        """Configured symbols, or every symbol already present in the store."""
        if self._settings.symbols:
            return list(self._settings.symbols)
        return await self._store.get_tracked_symbols()

    async def run_cycle(self) -> CycleResults:
        """Ingest every (symbol, kind) pair once."""
        symbols = await self.resolve_symbols()
        kinds = [DataKind(k) for k in self._settings.kinds]
        if not symbols:
            logger.warning("no_symbols_to_harvest")
            return {}

        results = await self._controller.ingest_many(symbols, kinds)
        self._cycles += 1

        persisted = sum(r.persisted for r in results.values() if isinstance(r, RunResult))
        failed = sum(1 for r in results.values() if isinstance(r, HarvesterError))
        logger.info(
            "harvest_cycle_complete",
            cycle=self._cycles,
            pairs=len(results),
            persisted=persisted,
            failed=failed,
        )
        return results

    def next_delay(self, results: CycleResults) -> float:
        """Seconds until the next cycle, per the error policy table.

        Raises the first ABORT-policy error found in results.
        """
        errors = [r for r in results.values() if isinstance(r, HarvesterError)]
        for error in errors:
            if error.policy is ErrorPolicy.ABORT:
                logger.critical(
                    "harvest_aborted",
                    error_kind=error.kind.value,
                    error=str(error),
                )
                raise error
        stops = [e for e in errors if e.policy is ErrorPolicy.STOP]
        if stops:
            delay = max(
                [self._settings.ban_backoff_seconds]
                + [e.retry_after for e in stops if getattr(e, "retry_after", None)]
            )
            logger.warning("harvest_backing_off", seconds=delay)
            return delay
        return self._settings.poll_interval

    async def _sleep(self, seconds: float) -> None:
        """Sleep between cycles, waking early if stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
