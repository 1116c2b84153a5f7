"""Ingestion controller: the resume -> fetch -> classify -> persist -> advance loop.

States:
    RESUMING -> FETCHING -> CLASSIFYING -> (PERSISTING -> ADVANCING -> FETCHING)* -> DRAINING

A run ends cleanly when a page comes back empty (caught up with the remote
dataset) or when a page holds only a withheld, still-open candle (nothing can
be finalized until real time passes). The caller re-invokes ingest()
periodically to keep tailing. There is no retry state here: any error that
reaches the controller ends the run at the last committed checkpoint.
"""

import asyncio
from enum import Enum

import structlog

from harvester.config import IngestionSettings
from harvester.data.store import MarketDataStore
from harvester.exceptions import HarvesterError, ProtocolViolationError
from harvester.ingestion.boundary import split_page
from harvester.ingestion.cursor import advance, cursor_after, initial_cursor
from harvester.ingestion.fetcher import PageFetcher
from harvester.ingestion.writer import BatchWriter
from harvester.logging import get_logger
from harvester.models import Cursor, DataKind, RunResult, StopReason

logger = get_logger(__name__)


class IngestionState(str, Enum):
    """Controller state for one ingest run."""

    RESUMING = "resuming"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    PERSISTING = "persisting"
    ADVANCING = "advancing"
    DRAINING = "draining"


class IngestionController:
    """Walks a symbol's remote dataset forward from its last checkpoint.

    All collaborators are passed in. Several controllers (or several
    concurrent ingest() calls on one controller) may share a PageFetcher
    and therefore one BudgetGovernor.

    Usage:
        controller = IngestionController(fetcher, store, writer, settings)
        result = await controller.ingest("BTCUSDT", DataKind.CANDLES)
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        store: MarketDataStore,
        writer: BatchWriter,
        settings: IngestionSettings,
    ) -> None:
        self._fetcher = fetcher
        self._store = store
        self._writer = writer
        self._settings = settings

    async def resume_cursor(
        self, symbol: str, kind: DataKind, start_hint: Cursor | None = None
    ) -> Cursor:
        """Cursor to start from: after the stored checkpoint, else the start hint."""
        last_key = await self._store.last_checkpoint(symbol, kind)
        if last_key is not None:
            return cursor_after(kind, last_key)
        if start_hint is not None:
            return start_hint
        return initial_cursor(
            kind, self._settings.start_time_ms, self._settings.start_trade_id
        )

    async def ingest(
        self,
        symbol: str,
        kind: DataKind = DataKind.CANDLES,
        start_hint: Cursor | None = None,
    ) -> RunResult:
        """Ingest every finalized record available for symbol, then return.

        Args:
            symbol: Exchange symbol, e.g. "BTCUSDT".
            kind: Which dataset to walk.
            start_hint: Where to start if nothing is stored yet. Ignored once
                a checkpoint exists.

        Raises:
            HarvesterError: any fetch or persistence failure; everything
                committed before it stays committed.
        """
        if start_hint is not None and start_hint.kind is not kind:
            raise ValueError(f"{type(start_hint).__name__} cannot start a {kind.value} run")

        result = RunResult(symbol=symbol, kind=kind)
        with structlog.contextvars.bound_contextvars(symbol=symbol, kind=kind.value):
            self._enter(IngestionState.RESUMING)
            cursor = await self.resume_cursor(symbol, kind, start_hint)
            logger.info("ingest_started", cursor=cursor.position)

            while True:
                self._enter(IngestionState.FETCHING, cursor=cursor.position)
                page = await self._fetcher.fetch(cursor, symbol)
                result.pages += 1

                if not page.records:
                    result.stop_reason = StopReason.EMPTY_PAGE
                    break
                if page.records[0].key < cursor.position:
                    raise ProtocolViolationError(
                        f"{kind.endpoint} page for {symbol} starts at "
                        f"{page.records[0].key}, before cursor {cursor.position}"
                    )

                self._enter(IngestionState.CLASSIFYING, records=len(page.records))
                finalized, withheld = split_page(
                    kind, page.records, page.observed.server_time_ms
                )
                if not finalized:
                    # Only the open minute came back; retry on a later invocation
                    result.stop_reason = StopReason.AWAITING_CLOSE
                    break

                self._enter(
                    IngestionState.PERSISTING,
                    finalized=len(finalized),
                    withheld=len(withheld),
                )
                result.checkpoint = await self._writer.persist(symbol, kind, finalized)
                result.persisted += len(finalized)

                self._enter(IngestionState.ADVANCING)
                cursor = advance(finalized[-1])

            self._enter(IngestionState.DRAINING, reason=result.stop_reason.value)
            result.next_cursor = cursor
            logger.info(
                "ingest_finished",
                pages=result.pages,
                persisted=result.persisted,
                checkpoint=result.checkpoint,
                next_cursor=cursor.position,
                reason=result.stop_reason.value,
            )
        return result

    async def ingest_many(
        self,
        symbols: list[str],
        kinds: list[DataKind],
    ) -> dict[tuple[str, DataKind], RunResult | HarvesterError]:
        """Run ingest() for every (symbol, kind) pair concurrently.

        Each pair is an independent task; all of them contend for the same
        budget governor. Ingestion errors are returned per pair rather than
        cancelling the siblings. Anything that is not a HarvesterError is
        re-raised.
        """
        pairs = [(symbol, kind) for symbol in symbols for kind in kinds]
        outcomes = await asyncio.gather(
            *(self.ingest(symbol, kind) for symbol, kind in pairs),
            return_exceptions=True,
        )

        results: dict[tuple[str, DataKind], RunResult | HarvesterError] = {}
        for pair, outcome in zip(pairs, outcomes):
            if isinstance(outcome, HarvesterError):
                logger.error(
                    "ingest_failed",
                    symbol=pair[0],
                    kind=pair[1].value,
                    error_kind=outcome.kind.value,
                    policy=outcome.policy.value,
                    error=str(outcome),
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            results[pair] = outcome
        return results

    @staticmethod
    def _enter(state: IngestionState, **fields: object) -> None:
        logger.debug("ingest_state", state=state.value, **fields)
