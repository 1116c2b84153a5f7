"""Next-cursor computation.

The next cursor is always derived from the last *finalized* record, never a
withheld one: the following request then starts exactly at the withheld
record (or the first unseen one) and cannot return an already stored record.
"""

from harvester.models import (
    MINUTE_MS,
    Candle,
    Cursor,
    DataKind,
    IdCursor,
    Record,
    TimeCursor,
    floor_minute,
)


def cursor_after(kind: DataKind, key: int) -> Cursor:
    """Cursor for the record following the one whose key is given.

    Used both after a batch and at resume time, where the key is the stored
    checkpoint.
    """
    if kind is DataKind.CANDLES:
        return TimeCursor(floor_minute(key) + MINUTE_MS)
    return IdCursor(key + 1)


def advance(last_finalized: Record) -> Cursor:
    """Cursor following the last record of a finalized batch."""
    kind = DataKind.CANDLES if isinstance(last_finalized, Candle) else DataKind.TRADES
    return cursor_after(kind, last_finalized.key)


def initial_cursor(kind: DataKind, start_time_ms: int, start_trade_id: int) -> Cursor:
    """Cursor for a symbol that has nothing stored yet."""
    if kind is DataKind.CANDLES:
        return TimeCursor(start_time_ms)
    return IdCursor(start_trade_id)
