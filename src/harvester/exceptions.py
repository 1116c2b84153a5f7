"""Error taxonomy for the ingestion engine.

Every failure raised by the engine is a HarvesterError carrying an ErrorKind.
ERROR_POLICY maps each kind to what the caller does about it:

- RETRY: transient; the page fetcher retries with exponential backoff
- STOP: quota or ban signal; halt the run and back off beyond the ban window
- ABORT: the remote contract or local storage is broken; continuing would
  corrupt data, so the failure is escalated

None of these are swallowed inside the engine. A failed run always stops at
the last committed checkpoint and is safe to re-invoke.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of an ingestion failure."""

    TRANSIENT_NETWORK = "transient_network"
    QUOTA = "quota"
    PROTOCOL = "protocol"
    PERSISTENCE = "persistence"
    CONTINUITY = "continuity"


class ErrorPolicy(str, Enum):
    """What the caller does when a failure of a given kind surfaces."""

    RETRY = "retry"
    STOP = "stop"
    ABORT = "abort"


ERROR_POLICY: dict[ErrorKind, ErrorPolicy] = {
    ErrorKind.TRANSIENT_NETWORK: ErrorPolicy.RETRY,
    ErrorKind.QUOTA: ErrorPolicy.STOP,
    ErrorKind.PROTOCOL: ErrorPolicy.ABORT,
    ErrorKind.PERSISTENCE: ErrorPolicy.ABORT,
    ErrorKind.CONTINUITY: ErrorPolicy.ABORT,
}


class HarvesterError(Exception):
    """Base exception for all ingestion errors."""

    kind: ErrorKind = ErrorKind.PROTOCOL

    @property
    def policy(self) -> ErrorPolicy:
        return ERROR_POLICY[self.kind]


class TransientNetworkError(HarvesterError):
    """Raised on connection errors and timeouts talking to the remote API."""

    kind = ErrorKind.TRANSIENT_NETWORK


class RateLimitedError(HarvesterError):
    """Raised when the API answers with a rate-limit (429) or IP-ban (418) status.

    retry_after carries the server's Retry-After in seconds when it sent one.
    """

    kind = ErrorKind.QUOTA

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header value, or None if absent or not numeric."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class ProtocolViolationError(HarvesterError):
    """Raised when a response breaks the API contract.

    Unexpected status or content type, missing budget headers, or a page whose
    records do not have the expected shape.
    """

    kind = ErrorKind.PROTOCOL


class PersistenceError(HarvesterError):
    """Raised when a batch could not be committed to the store."""

    kind = ErrorKind.PERSISTENCE


class ContinuityError(PersistenceError):
    """Raised when a batch would leave a gap, a duplicate or a backward checkpoint."""

    kind = ErrorKind.CONTINUITY
