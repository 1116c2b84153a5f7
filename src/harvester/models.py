"""Shared data models for the market data harvester.

CRITICAL: All prices and quantities use Decimal. Never use float for market data.
All timestamps are Unix epoch milliseconds (UTC).
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

MINUTE_MS = 60_000


def floor_minute(timestamp_ms: int) -> int:
    """Truncate an epoch-millisecond timestamp to the start of its minute."""
    return timestamp_ms - timestamp_ms % MINUTE_MS


class DataKind(str, Enum):
    """The two remote datasets the engine walks through."""

    CANDLES = "candles"
    TRADES = "trades"

    @property
    def endpoint(self) -> str:
        """Binance USD-M futures REST endpoint serving this dataset."""
        return "klines" if self is DataKind.CANDLES else "historicalTrades"


@dataclass(frozen=True)
class Candle:
    """One closed (or still open) one-minute kline."""

    period_start_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    trade_count: int
    base_volume: Decimal
    taker_buy_base_volume: Decimal
    quote_volume: Decimal
    taker_buy_quote_volume: Decimal

    @property
    def key(self) -> int:
        return self.period_start_ms


@dataclass(frozen=True)
class Trade:
    """One executed trade. Immutable once the exchange assigns its id."""

    trade_id: int
    executed_at_ms: int
    price: Decimal
    quantity: Decimal
    quote_quantity: Decimal
    is_buyer_maker: bool

    @property
    def key(self) -> int:
        return self.trade_id


Record = Candle | Trade


@dataclass(frozen=True)
class TimeCursor:
    """Resume position for candles: the next minute to request."""

    next_period_start_ms: int

    kind = DataKind.CANDLES

    @property
    def position(self) -> int:
        return self.next_period_start_ms

    def query_params(self) -> dict[str, str]:
        return {"startTime": str(self.next_period_start_ms)}


@dataclass(frozen=True)
class IdCursor:
    """Resume position for trades: the next trade id to request."""

    next_trade_id: int

    kind = DataKind.TRADES

    @property
    def position(self) -> int:
        return self.next_trade_id

    def query_params(self) -> dict[str, str]:
        return {"fromId": str(self.next_trade_id)}


Cursor = TimeCursor | IdCursor


@dataclass
class BudgetState:
    """Request-weight budget as last reported by the server.

    Never persisted: the server is authoritative, so a restart simply begins
    from used_weight=0 and learns the real value on the first response.
    """

    server_time_ms: int
    used_weight: int
    max_weight: int = 1200


@dataclass(frozen=True)
class FetchResult:
    """One decoded page plus the budget state learned from its response."""

    records: list[Record]
    observed: BudgetState


class StopReason(str, Enum):
    """Why an ingest run ended without error."""

    EMPTY_PAGE = "empty_page"
    AWAITING_CLOSE = "awaiting_close"


@dataclass
class RunResult:
    """Summary of one ingest run for a (symbol, kind) pair."""

    symbol: str
    kind: DataKind
    pages: int = 0
    persisted: int = 0
    checkpoint: int | None = None
    next_cursor: Cursor | None = None
    stop_reason: StopReason | None = None
