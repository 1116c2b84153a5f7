"""Request-weight budget governor.

Binance reports the weight consumed in the current one-minute window on every
response (X-MBX-USED-WEIGHT-1M). The governor never estimates endpoint costs
itself: it trusts the last reported value and, once the budget is spent,
waits for the next minute boundary as seen on the server's clock.

One governor instance is shared by every symbol task in the process. Its
gate() is a single serialized gate: admission, the request and the budget
update happen under one asyncio.Lock, so no task can issue a request on a
budget reading that another in-flight request is about to invalidate.

A 429 or 418 is a verdict on the whole IP, not on one symbol. When a
RateLimitedError leaves the gate, the governor halts: every later gate()
raises RateLimitedError without issuing a request until Retry-After (or
ban_backoff seconds when the server sent none) has passed. Requests sent
during a ban only lengthen it.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from harvester.exceptions import RateLimitedError
from harvester.logging import get_logger
from harvester.models import MINUTE_MS, BudgetState, floor_minute

logger = get_logger(__name__)


class BudgetGovernor:
    """Decides how long the caller must wait before the next request.

    Args:
        max_weight: Weight allowed per rolling one-minute window.
        pacing_delay: Seconds between requests while some weight is in use.
        ban_backoff: Seconds to halt after a rate-limit response that carried
            no Retry-After.
        clock: Monotonic clock in seconds, used to measure time elapsed since
            the last server reading and to expire a halt.
    """

    def __init__(
        self,
        max_weight: int = 1200,
        pacing_delay: float = 0.5,
        ban_backoff: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pacing_delay = pacing_delay
        self._ban_backoff = ban_backoff
        self._clock = clock
        self._state = BudgetState(
            server_time_ms=int(time.time() * 1000),
            used_weight=0,
            max_weight=max_weight,
        )
        self._observed_at = clock()
        self._halted_until: float | None = None
        self._halt_status: int | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BudgetState:
        return self._state

    @property
    def halted_for(self) -> float:
        """Seconds left on the current rate-limit halt, 0.0 when not halted."""
        if self._halted_until is None:
            return 0.0
        remaining = self._halted_until - self._clock()
        if remaining <= 0:
            self._halted_until = None
            self._halt_status = None
            return 0.0
        return remaining

    def admit(self) -> float:
        """Return the seconds to wait before the next request may be issued."""
        state = self._state
        if state.used_weight >= state.max_weight:
            window_end_ms = floor_minute(state.server_time_ms) + MINUTE_MS
            elapsed_ms = (self._clock() - self._observed_at) * 1000
            server_now_ms = state.server_time_ms + elapsed_ms
            return max(0.0, (window_end_ms - server_now_ms) / 1000)
        if state.used_weight > 0:
            return self._pacing_delay
        return 0.0

    def update(self, server_time_ms: int, used_weight: int) -> None:
        """Overwrite the budget state from response metadata."""
        self._state.server_time_ms = server_time_ms
        self._state.used_weight = used_weight
        self._observed_at = self._clock()

    def halt(self, seconds: float | None = None, status: int | None = None) -> None:
        """Refuse every request for the given seconds (default ban_backoff).

        An existing halt is only ever extended, never shortened.
        """
        duration = self._ban_backoff if seconds is None else seconds
        until = self._clock() + duration
        if self._halted_until is None or until > self._halted_until:
            self._halted_until = until
            self._halt_status = status
        logger.warning("requests_halted", seconds=round(duration, 3), status=status)

    @asynccontextmanager
    async def gate(self) -> AsyncIterator[BudgetState]:
        """Wait for admission and hold the gate while the caller makes its request.

        The caller reports the response metadata through update() before
        leaving the block. A RateLimitedError raised inside the block halts
        the governor. Cancelling while waiting releases the gate.

        Raises:
            RateLimitedError: the governor is halted; no request may be sent.
        """
        async with self._lock:
            remaining = self.halted_for
            if remaining > 0:
                raise RateLimitedError(
                    f"Rate limit in effect for another {remaining:.1f}s, request not sent",
                    status=self._halt_status,
                    retry_after=remaining,
                )

            wait = self.admit()
            if wait > 0:
                if self._state.used_weight >= self._state.max_weight:
                    logger.info(
                        "weight_budget_exhausted",
                        used_weight=self._state.used_weight,
                        max_weight=self._state.max_weight,
                        wait_seconds=round(wait, 3),
                    )
                await asyncio.sleep(wait)
            try:
                yield self._state
            except RateLimitedError as e:
                self.halt(e.retry_after, e.status)
                raise
