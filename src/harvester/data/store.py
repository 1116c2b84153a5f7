"""Typed SQLite read/write abstraction for harvested market data.

Provides MarketDataStore with the two operations the ingestion engine relies
on (last_checkpoint, append_and_checkpoint) plus read-side queries for
downstream consumers. All SQL is isolated behind this interface.

CRITICAL: All price/quantity values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
import time
from decimal import Decimal

import aiosqlite

from harvester.data.database import HarvestDatabase
from harvester.exceptions import ContinuityError, PersistenceError
from harvester.logging import get_logger
from harvester.models import MINUTE_MS, Candle, DataKind, Record, Trade

logger = get_logger(__name__)

_CANDLE_COLUMNS = (
    "symbol, period_start_ms, open, high, low, close, trade_count, "
    "base_volume, taker_buy_base_volume, quote_volume, taker_buy_quote_volume"
)
_TRADE_COLUMNS = (
    "symbol, trade_id, executed_at_ms, price, quantity, quote_quantity, is_buyer_maker"
)


def _candle_row(symbol: str, c: Candle) -> tuple:
    return (
        symbol,
        c.period_start_ms,
        str(c.open),
        str(c.high),
        str(c.low),
        str(c.close),
        c.trade_count,
        str(c.base_volume),
        str(c.taker_buy_base_volume),
        str(c.quote_volume),
        str(c.taker_buy_quote_volume),
    )


def _trade_row(symbol: str, t: Trade) -> tuple:
    return (
        symbol,
        t.trade_id,
        t.executed_at_ms,
        str(t.price),
        str(t.quantity),
        str(t.quote_quantity),
        1 if t.is_buyer_maker else 0,
    )


def _multi_row_insert(table: str, columns: str, rows: list[tuple]) -> tuple[str, list]:
    """Build a single INSERT ... VALUES (...), (...) statement for all rows."""
    width = len(rows[0])
    group = "(" + ", ".join("?" * width) + ")"
    sql = f"INSERT INTO {table} ({columns}) VALUES " + ", ".join([group] * len(rows))
    params = [value for row in rows for value in row]
    return sql, params


class MarketDataStore:
    """Async SQLite store for candles, trades and per-symbol checkpoints.

    Wraps HarvestDatabase with typed read/write methods. Every statement runs
    under one asyncio.Lock because every symbol task shares one aiosqlite
    connection: interleaved BEGIN/COMMIT pairs would merge their
    transactions, and a read issued mid-transaction would see rows that may
    still roll back.

    Usage:
        async with HarvestDatabase("data/market.db") as database:
            store = MarketDataStore(database)
            last = await store.last_checkpoint("BTCUSDT", DataKind.CANDLES)
    """

    def __init__(self, database: HarvestDatabase) -> None:
        self._database = database
        self._lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Checkpoints
    # ──────────────────────────────────────────────

    async def last_checkpoint(self, symbol: str, kind: DataKind) -> int | None:
        """Return the key of the last persisted record, or None if nothing is stored.

        The key is period_start_ms for candles and trade_id for trades.
        """
        rows = await self._fetchall(
            "SELECT last_key FROM checkpoints WHERE symbol = ? AND data_kind = ?",
            (symbol, kind.value),
        )
        return int(rows[0][0]) if rows else None

    async def get_checkpoints(self) -> list[dict]:
        """Return every checkpoint row, ordered by symbol then data kind."""
        rows = await self._fetchall(
            "SELECT symbol, data_kind, last_key, updated_at_ms FROM checkpoints "
            "ORDER BY symbol, data_kind"
        )
        return [
            {
                "symbol": row[0],
                "data_kind": DataKind(row[1]),
                "last_key": row[2],
                "updated_at_ms": row[3],
            }
            for row in rows
        ]

    async def get_tracked_symbols(self, kind: DataKind | None = None) -> list[str]:
        """Return symbols that already have harvested data."""
        query = "SELECT DISTINCT symbol FROM checkpoints"
        params: tuple = ()
        if kind is not None:
            query += " WHERE data_kind = ?"
            params = (kind.value,)
        rows = await self._fetchall(query + " ORDER BY symbol", params)
        return [row[0] for row in rows]

    async def _fetchall(self, query: str, params: tuple | list = ()) -> list:
        # Same connection as the writers: never read inside another task's open transaction
        async with self._lock:
            cursor = await self._database.db.execute(query, params)
            return list(await cursor.fetchall())

    # ──────────────────────────────────────────────
    # Atomic append
    # ──────────────────────────────────────────────

    async def append_and_checkpoint(
        self, symbol: str, kind: DataKind, batch: list[Record]
    ) -> int:
        """Insert a finalized batch and advance the checkpoint in one transaction.

        The batch must be non-empty and ordered by key. Inside the transaction
        the current checkpoint is re-read and the batch rejected if it would
        move the checkpoint backward, duplicate a stored record, or (for
        trades) leave a gap after it. Rows are written with one multi-row
        INSERT; a duplicate primary key aborts the whole transaction.

        Returns the new checkpoint key (the last record's key).

        Raises:
            ContinuityError: the batch does not continue the stored sequence.
            PersistenceError: SQLite failed; nothing was committed.
        """
        if not batch:
            raise ValueError("append_and_checkpoint requires a non-empty batch")

        if kind is DataKind.CANDLES:
            table, columns = "candles", _CANDLE_COLUMNS
            rows = [_candle_row(symbol, c) for c in batch]  # type: ignore[arg-type]
        else:
            table, columns = "trades", _TRADE_COLUMNS
            rows = [_trade_row(symbol, t) for t in batch]  # type: ignore[arg-type]

        first_key = batch[0].key
        last_key = batch[-1].key
        db = self._database.db

        async with self._lock:
            committed = False
            try:
                await db.execute("BEGIN IMMEDIATE")

                cursor = await db.execute(
                    "SELECT last_key FROM checkpoints WHERE symbol = ? AND data_kind = ?",
                    (symbol, kind.value),
                )
                row = await cursor.fetchone()
                current = None if row is None else int(row[0])
                self._check_continuity(symbol, kind, current, first_key)

                sql, params = _multi_row_insert(table, columns, rows)
                await db.execute(sql, params)

                await db.execute(
                    "INSERT INTO checkpoints (symbol, data_kind, last_key, updated_at_ms) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT (symbol, data_kind) DO UPDATE SET "
                    "last_key = excluded.last_key, updated_at_ms = excluded.updated_at_ms",
                    (symbol, kind.value, last_key, int(time.time() * 1000)),
                )
                await db.commit()
                committed = True
            except aiosqlite.Error as e:
                logger.error(
                    "batch_persist_failed",
                    symbol=symbol,
                    kind=kind.value,
                    first_key=first_key,
                    last_key=last_key,
                    error=str(e),
                )
                raise PersistenceError(
                    f"Failed to persist {len(batch)} {kind.value} for {symbol}: {e}"
                ) from e
            finally:
                if not committed:
                    await db.rollback()

        return last_key

    @staticmethod
    def _check_continuity(
        symbol: str, kind: DataKind, current: int | None, first_key: int
    ) -> None:
        if current is None:
            return
        if first_key <= current:
            raise ContinuityError(
                f"{kind.value} batch for {symbol} starts at {first_key}, "
                f"not after checkpoint {current}"
            )
        if kind is DataKind.TRADES and first_key != current + 1:
            raise ContinuityError(
                f"trade id gap for {symbol}: checkpoint {current}, batch starts at {first_key}"
            )
        if kind is DataKind.CANDLES and first_key != current + MINUTE_MS:
            # Exchange maintenance windows produce no klines
            logger.warning(
                "candle_gap_detected",
                symbol=symbol,
                after_ms=current,
                resumes_at_ms=first_key,
                missing_minutes=(first_key - current) // MINUTE_MS - 1,
            )

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get_candles(
        self,
        symbol: str,
        since_ms: int | None = None,
        until_ms: int | None = None,
    ) -> list[Candle]:
        """Query candles for a symbol within an optional time range.

        Returns list of Candle ordered by period_start_ms ASC.
        """
        conditions = ["symbol = ?"]
        params: list = [symbol]

        if since_ms is not None:
            conditions.append("period_start_ms >= ?")
            params.append(since_ms)
        if until_ms is not None:
            conditions.append("period_start_ms <= ?")
            params.append(until_ms)

        where = " AND ".join(conditions)
        rows = await self._fetchall(
            f"SELECT {_CANDLE_COLUMNS} FROM candles WHERE {where} "
            f"ORDER BY period_start_ms ASC",
            params,
        )
        return [
            Candle(
                period_start_ms=row[1],
                open=Decimal(row[2]),
                high=Decimal(row[3]),
                low=Decimal(row[4]),
                close=Decimal(row[5]),
                trade_count=row[6],
                base_volume=Decimal(row[7]),
                taker_buy_base_volume=Decimal(row[8]),
                quote_volume=Decimal(row[9]),
                taker_buy_quote_volume=Decimal(row[10]),
            )
            for row in rows
        ]

    async def get_trades(
        self,
        symbol: str,
        from_id: int | None = None,
        limit: int | None = None,
    ) -> list[Trade]:
        """Query trades for a symbol starting at an optional trade id.

        Returns list of Trade ordered by trade_id ASC.
        """
        query = f"SELECT {_TRADE_COLUMNS} FROM trades WHERE symbol = ?"
        params: list = [symbol]
        if from_id is not None:
            query += " AND trade_id >= ?"
            params.append(from_id)
        query += " ORDER BY trade_id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        rows = await self._fetchall(query, params)
        return [
            Trade(
                trade_id=row[1],
                executed_at_ms=row[2],
                price=Decimal(row[3]),
                quantity=Decimal(row[4]),
                quote_quantity=Decimal(row[5]),
                is_buyer_maker=bool(row[6]),
            )
            for row in rows
        ]
