"""Split a fetched page into records safe to persist and records to withhold.

Candles: the minute the server is currently in may still receive trades that
change its high, low and close, so a trailing candle from that minute (or a
later one) is withheld. It comes back, closed, as a non-trailing record of a
later page.

Trades: a trade never changes once the exchange assigns its id, so a trade
page is final as a whole.
"""

from harvester.models import Candle, DataKind, Record, Trade, floor_minute


def split_candles(
    page: list[Candle], server_time_ms: int
) -> tuple[list[Candle], list[Candle]]:
    """Return (finalized, withheld) for a candle page.

    server_time_ms is the server clock observed on the response that
    carried the page.
    """
    if not page:
        return [], []
    if floor_minute(page[-1].period_start_ms) < floor_minute(server_time_ms):
        return list(page), []
    return list(page[:-1]), [page[-1]]


def split_trades(page: list[Trade]) -> tuple[list[Trade], list[Trade]]:
    """Return (finalized, withheld) for a trade page: everything is final."""
    return list(page), []


def split_page(
    kind: DataKind, page: list[Record], server_time_ms: int
) -> tuple[list[Record], list[Record]]:
    if kind is DataKind.CANDLES:
        return split_candles(page, server_time_ms)  # type: ignore[arg-type,return-value]
    return split_trades(page)  # type: ignore[arg-type,return-value]
