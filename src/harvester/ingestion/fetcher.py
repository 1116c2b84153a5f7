"""Bounded page fetch against the market data gateway.

Each fetch passes through the shared BudgetGovernor gate, issues one request
for the page starting at the cursor, classifies the response, updates the
governor from the response headers and decodes the page into typed records.

Response classification:
- 429 / 418              -> RateLimitedError (stop the run, do not retry)
- any other non-200      -> ProtocolViolationError
- non-JSON content type  -> ProtocolViolationError
- missing Date or used-weight header -> ProtocolViolationError
- malformed page         -> ProtocolViolationError
Only TransientNetworkError from the transport is retried, with exponential
backoff, before it surfaces.
"""

import asyncio
from email.utils import parsedate_to_datetime

from pydantic import ValidationError

from harvester.config import IngestionSettings
from harvester.exceptions import (
    ErrorPolicy,
    HarvesterError,
    ProtocolViolationError,
    RateLimitedError,
    parse_retry_after,
)
from harvester.exchange.gateway import GatewayResponse, MarketDataGateway
from harvester.exchange.payloads import decode_candles, decode_trades
from harvester.ingestion.budget import BudgetGovernor
from harvester.logging import get_logger
from harvester.models import BudgetState, Cursor, DataKind, FetchResult, TimeCursor

logger = get_logger(__name__)

RATE_LIMIT_STATUSES = frozenset({418, 429})
USED_WEIGHT_HEADER = "X-MBX-USED-WEIGHT-1M"


def classify_status(response: GatewayResponse) -> None:
    """Raise unless the response is a 200 carrying JSON."""
    if response.status in RATE_LIMIT_STATUSES:
        retry_after = parse_retry_after(response.header("Retry-After"))
        raise RateLimitedError(
            f"HTTP {response.status} from API, retry after "
            f"{retry_after if retry_after is not None else 'unknown'}s",
            status=response.status,
            retry_after=retry_after,
        )
    if response.status != 200:
        raise ProtocolViolationError(f"Unexpected HTTP status {response.status}")

    content_type = (response.header("Content-Type") or "").split(";")[0].strip().lower()
    if content_type != "application/json":
        raise ProtocolViolationError(
            f"Unexpected content type {response.header('Content-Type')!r}"
        )


def parse_budget_headers(response: GatewayResponse) -> tuple[int, int]:
    """Return (server_time_ms, used_weight) from response headers.

    Absent or unparsable metadata is a protocol violation: assuming zero
    weight would risk overrunning the server's real budget.
    """
    date_value = response.header("Date")
    weight_value = response.header(USED_WEIGHT_HEADER)
    if date_value is None or weight_value is None:
        raise ProtocolViolationError(
            f"Response missing budget headers (Date={date_value!r}, "
            f"{USED_WEIGHT_HEADER}={weight_value!r})"
        )
    try:
        server_time = parsedate_to_datetime(date_value)
        used_weight = int(weight_value)
    except (TypeError, ValueError) as e:
        raise ProtocolViolationError(f"Unparsable budget headers: {e}") from e
    if server_time.tzinfo is None or used_weight < 0:
        raise ProtocolViolationError(
            f"Invalid budget headers (Date={date_value!r}, weight={weight_value!r})"
        )
    return int(server_time.timestamp() * 1000), used_weight


class PageFetcher:
    """Fetches one bounded page of candles or trades for a cursor.

    Usage:
        fetcher = PageFetcher(gateway, governor, settings)
        result = await fetcher.fetch(TimeCursor(1700000000000), "BTCUSDT")
    """

    def __init__(
        self,
        gateway: MarketDataGateway,
        governor: BudgetGovernor,
        settings: IngestionSettings,
    ) -> None:
        self._gateway = gateway
        self._governor = governor
        self._settings = settings

    def build_params(self, cursor: Cursor, symbol: str) -> dict[str, str]:
        if isinstance(cursor, TimeCursor):
            params = {
                "symbol": symbol,
                "interval": "1m",
                "limit": str(self._settings.candle_page_limit),
            }
        else:
            params = {"symbol": symbol, "limit": str(self._settings.trade_page_limit)}
        params.update(cursor.query_params())
        return params

    async def fetch(self, cursor: Cursor, symbol: str) -> FetchResult:
        """Fetch the page starting at cursor, retrying transient network failures.

        Makes at most max_retries attempts (at least one) with delays base,
        2*base, 4*base, ... Errors of any other kind surface immediately.
        """
        max_retries = self._settings.max_retries
        base_delay = self._settings.retry_base_delay

        attempt = 0
        while True:
            try:
                return await self._fetch_once(cursor, symbol)
            except HarvesterError as e:
                if e.policy is not ErrorPolicy.RETRY:
                    raise
                if attempt + 1 >= max_retries:
                    logger.error(
                        "fetch_failed_permanently",
                        symbol=symbol,
                        error=str(e),
                        attempts=attempt + 1,
                    )
                    raise

                delay = base_delay * (2**attempt)
                logger.warning(
                    "fetch_retry",
                    symbol=symbol,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _fetch_once(self, cursor: Cursor, symbol: str) -> FetchResult:
        kind = cursor.kind
        params = self.build_params(cursor, symbol)

        async with self._governor.gate() as state:
            response = await self._gateway.get(kind.endpoint, params)
            classify_status(response)
            server_time_ms, used_weight = parse_budget_headers(response)
            self._governor.update(server_time_ms, used_weight)
            observed = BudgetState(
                server_time_ms=server_time_ms,
                used_weight=used_weight,
                max_weight=state.max_weight,
            )

        try:
            if kind is DataKind.CANDLES:
                records = decode_candles(response.payload)
            else:
                records = decode_trades(response.payload)
        except ValidationError as e:
            raise ProtocolViolationError(
                f"Malformed {kind.endpoint} page for {symbol}: {e.error_count()} errors"
            ) from e

        logger.debug(
            "page_fetched",
            symbol=symbol,
            endpoint=kind.endpoint,
            records=len(records),
            used_weight=used_weight,
        )
        return FetchResult(records=records, observed=observed)  # type: ignore[arg-type]
