"""Persist a finalized batch and its checkpoint as one unit of work."""

from harvester.data.store import MarketDataStore
from harvester.exceptions import ContinuityError
from harvester.logging import get_logger
from harvester.models import MINUTE_MS, DataKind, Record

logger = get_logger(__name__)


def validate_batch(symbol: str, kind: DataKind, records: list[Record]) -> None:
    """Reject a batch that is out of order or internally discontinuous.

    Keys must strictly increase. Candles must be minute-aligned; a missing
    minute inside a page is logged (maintenance windows have no klines).
    Trade ids must be contiguous.
    """
    previous: int | None = None
    for record in records:
        key = record.key
        if kind is DataKind.CANDLES and key % MINUTE_MS != 0:
            raise ContinuityError(f"candle for {symbol} at {key} is not minute-aligned")
        if previous is not None:
            if key <= previous:
                raise ContinuityError(
                    f"{kind.value} for {symbol} out of order: {key} after {previous}"
                )
            if kind is DataKind.TRADES and key != previous + 1:
                raise ContinuityError(
                    f"trade id gap for {symbol} inside page: {previous} -> {key}"
                )
            if kind is DataKind.CANDLES and key != previous + MINUTE_MS:
                logger.warning(
                    "candle_gap_detected",
                    symbol=symbol,
                    after_ms=previous,
                    resumes_at_ms=key,
                    missing_minutes=(key - previous) // MINUTE_MS - 1,
                )
        previous = key


class BatchWriter:
    """Writes finalized batches through the store's atomic append.

    Usage:
        writer = BatchWriter(store)
        checkpoint = await writer.persist("BTCUSDT", DataKind.CANDLES, finalized)
    """

    def __init__(self, store: MarketDataStore) -> None:
        self._store = store

    async def persist(self, symbol: str, kind: DataKind, records: list[Record]) -> int:
        """Validate and commit a batch; return the committed checkpoint key.

        The rows and the checkpoint are written in a single transaction, so a
        crash can never leave the checkpoint ahead of committed data.
        """
        if not records:
            raise ValueError("persist requires a non-empty finalized batch")
        validate_batch(symbol, kind, records)
        checkpoint = await self._store.append_and_checkpoint(symbol, kind, records)
        logger.debug(
            "batch_persisted",
            symbol=symbol,
            kind=kind.value,
            rows=len(records),
            checkpoint=checkpoint,
        )
        return checkpoint
