"""Abstract market data gateway interface.

The ingestion engine depends only on this contract: one GET against a named
endpoint, returning the status, the response headers and the decoded JSON
body. Binance-specific transport details stay in the concrete implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class GatewayResponse:
    """Raw outcome of a single remote call.

    Header names are lower-cased so lookups do not depend on the transport.
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    payload: Any = None

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class MarketDataGateway(ABC):
    """Abstract base class for remote market data APIs."""

    @abstractmethod
    async def get(self, endpoint: str, params: dict[str, str]) -> GatewayResponse:
        """Issue one GET request against endpoint with the given query params.

        Raises:
            TransientNetworkError: connection failure or timeout.
            RateLimitedError: the transport itself reported a rate-limit or ban.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources."""
        ...
