"""Remote market data access -- Binance USD-M futures REST API via ccxt."""

from harvester.exchange.binance_gateway import BinanceFuturesGateway
from harvester.exchange.gateway import GatewayResponse, MarketDataGateway

__all__ = ["BinanceFuturesGateway", "GatewayResponse", "MarketDataGateway"]
