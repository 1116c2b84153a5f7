"""Binance USD-M futures gateway via ccxt async.

Wraps ccxt.async_support.binanceusdm and calls its implicit public endpoints
directly, so the engine receives raw kline rows and trade dicts exactly as
Binance sends them. ccxt's own rate limiter is disabled: request pacing is
owned by the BudgetGovernor, which reads the weight Binance reports back.
"""

import ccxt.async_support as ccxt_async

from harvester.config import ExchangeSettings
from harvester.exceptions import (
    ProtocolViolationError,
    RateLimitedError,
    TransientNetworkError,
    parse_retry_after,
)
from harvester.exchange.gateway import GatewayResponse, MarketDataGateway
from harvester.logging import get_logger

logger = get_logger(__name__)

# ccxt implicit API method per /fapi/v1 endpoint
_ENDPOINT_METHODS = {
    "klines": "fapiPublicGetKlines",
    "historicalTrades": "fapiPublicGetHistoricalTrades",
}


def _lowercase_headers(raw: object) -> dict[str, str]:
    """Copy ccxt's last response headers with lower-cased names."""
    return {str(k).lower(): str(v) for k, v in (raw or {}).items()}  # type: ignore[attr-defined]


class BinanceFuturesGateway(MarketDataGateway):
    """Concrete Binance USD-M futures gateway using ccxt async."""

    def __init__(self, settings: ExchangeSettings) -> None:
        self._settings = settings

        config: dict = {
            "apiKey": settings.api_key.get_secret_value(),
            "enableRateLimit": False,
            "timeout": int(settings.timeout_seconds * 1000),
        }
        self._exchange = ccxt_async.binanceusdm(config)

        # fapiPublic resolves to <base_url>/fapi/v1
        base = settings.base_url.rstrip("/")
        self._exchange.urls["api"]["fapiPublic"] = f"{base}/fapi/v1"

    @property
    def exchange(self) -> ccxt_async.binanceusdm:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def get(self, endpoint: str, params: dict[str, str]) -> GatewayResponse:
        """Call a /fapi/v1 endpoint and return its payload with response headers.

        ccxt raises for every non-2xx status, so a returned response always
        carries status 200. Its exceptions are translated into the engine's
        error taxonomy here.
        """
        method_name = _ENDPOINT_METHODS.get(endpoint)
        if method_name is None:
            raise ValueError(f"Unsupported endpoint {endpoint}")
        method = getattr(self._exchange, method_name)

        try:
            payload = await method(params)
        except (ccxt_async.RateLimitExceeded, ccxt_async.DDoSProtection) as e:
            # Binance 429 and -1003 raise RateLimitExceeded. Depending on the ccxt
            # release it is a sibling of DDoSProtection, not a subclass, and both
            # derive from NetworkError, so they must be matched before it.
            headers = _lowercase_headers(self._exchange.last_response_headers)
            retry_after = parse_retry_after(headers.get("retry-after"))
            logger.warning(
                "binance_rate_limited",
                endpoint=endpoint,
                retry_after=retry_after,
                error=str(e),
            )
            raise RateLimitedError(str(e), retry_after=retry_after) from e
        except ccxt_async.ExchangeNotAvailable as e:
            raise ProtocolViolationError(f"{endpoint} unavailable: {e}") from e
        except ccxt_async.NetworkError as e:
            raise TransientNetworkError(f"{endpoint} request failed: {e}") from e
        except ccxt_async.BaseError as e:
            raise ProtocolViolationError(f"{endpoint} rejected: {e}") from e

        headers = _lowercase_headers(self._exchange.last_response_headers)
        return GatewayResponse(status=200, headers=headers, payload=payload)

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        logger.info("closing_binance_connection")
        await self._exchange.close()
        logger.info("binance_connection_closed")
