"""Typed wire shapes for Binance USD-M futures market data pages.

Pages are validated straight into these shapes with pydantic, so a row with
the wrong arity or a non-numeric field fails as one ValidationError instead
of being re-marshaled field by field.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from harvester.models import Candle, Trade

# [ openTime, open, high, low, close, volume, closeTime, quoteAssetVolume,
#   numberOfTrades, takerBuyBaseAssetVolume, takerBuyQuoteAssetVolume, ignore ]
KlineRow = tuple[
    int, Decimal, Decimal, Decimal, Decimal, Decimal,
    int, Decimal, int, Decimal, Decimal, str,
]

KLINE_PAGE = TypeAdapter(list[KlineRow])


class TradePayload(BaseModel):
    """One element of a /fapi/v1/historicalTrades response."""

    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(ge=0)
    price: Decimal = Field(ge=0)
    qty: Decimal = Field(ge=0)
    quote_qty: Decimal = Field(alias="quoteQty", ge=0)
    time: int
    is_buyer_maker: bool = Field(alias="isBuyerMaker")

    def to_trade(self) -> Trade:
        return Trade(
            trade_id=self.id,
            executed_at_ms=self.time,
            price=self.price,
            quantity=self.qty,
            quote_quantity=self.quote_qty,
            is_buyer_maker=self.is_buyer_maker,
        )


TRADE_PAGE = TypeAdapter(list[TradePayload])


def kline_to_candle(row: KlineRow) -> Candle:
    """Map a validated kline row onto a Candle."""
    return Candle(
        period_start_ms=row[0],
        open=row[1],
        high=row[2],
        low=row[3],
        close=row[4],
        trade_count=row[8],
        base_volume=row[5],
        taker_buy_base_volume=row[9],
        quote_volume=row[7],
        taker_buy_quote_volume=row[10],
    )


def decode_candles(payload: object) -> list[Candle]:
    """Validate a klines payload and return candles sorted by open time.

    Raises pydantic.ValidationError when the payload does not have the
    kline page shape.
    """
    rows = KLINE_PAGE.validate_python(payload)
    return sorted((kline_to_candle(row) for row in rows), key=lambda c: c.period_start_ms)


def decode_trades(payload: object) -> list[Trade]:
    """Validate a historicalTrades payload and return trades sorted by id."""
    trades = TRADE_PAGE.validate_python(payload)
    return sorted((t.to_trade() for t in trades), key=lambda t: t.trade_id)
