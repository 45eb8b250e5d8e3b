"""Sliding window rate limiting for outbound search calls."""

import asyncio
import time
from collections import deque
from collections.abc import Callable
from typing import Any

import structlog

from websearch.utils.config import (
    DEFAULT_RATE_LIMIT,
    DEFAULT_RATE_WINDOW_MS,
    DEFAULT_RETRY_AFTER_MS,
    positive_int_or_default,
)

logger = structlog.get_logger()


class RateLimiter:
    """
    Async-compatible sliding window rate limiter.

    Counts accepted requests inside the last `window_ms` milliseconds.
    Recording is explicit: `check_limit()` only queries, `increment()` records,
    so callers can skip recording for cache hits and failed calls.
    """

    POLL_INTERVAL_MS = 100

    def __init__(
        self,
        limit: Any = DEFAULT_RATE_LIMIT,
        window_ms: Any = DEFAULT_RATE_WINDOW_MS,
        retry_after_ms: Any = DEFAULT_RETRY_AFTER_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize rate limiter.

        Args:
            limit: Maximum accepted requests per window
            window_ms: Window length in milliseconds
            retry_after_ms: Floor for the reported wait once the limit is hit
            clock: Monotonic clock returning seconds (injectable for tests)
        """
        self.limit = positive_int_or_default(limit, DEFAULT_RATE_LIMIT)
        self.window_ms = positive_int_or_default(window_ms, DEFAULT_RATE_WINDOW_MS)
        self.retry_after_ms = positive_int_or_default(retry_after_ms, DEFAULT_RETRY_AFTER_MS)
        self._clock = clock
        self._requests: deque[float] = deque()

        logger.info(
            "Rate limiter initialized",
            limit=self.limit,
            window_ms=self.window_ms,
            retry_after_ms=self.retry_after_ms,
        )

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _prune(self, now_ms: float) -> None:
        """Drop timestamps that fell out of the window."""
        while self._requests and now_ms - self._requests[0] >= self.window_ms:
            self._requests.popleft()

    def check_limit(self) -> bool:
        """
        Check whether another request fits in the current window.

        Does not record anything.

        Returns:
            True if a request is allowed, False if the limit is reached
        """
        self._prune(self._now_ms())

        if len(self._requests) < self.limit:
            return True

        logger.warning(
            "Rate limit exceeded",
            current_requests=len(self._requests),
            limit=self.limit,
            window_ms=self.window_ms,
        )
        return False

    def increment(self) -> None:
        """Record an accepted outbound request."""
        self._requests.append(self._now_ms())

    def get_time_to_wait(self) -> int:
        """Milliseconds until the next request is allowed, 0 if allowed now."""
        now_ms = self._now_ms()
        self._prune(now_ms)

        if len(self._requests) < self.limit:
            return 0

        oldest = self._requests[0]
        wait_ms = oldest + self.window_ms - now_ms
        return int(max(wait_ms, self.retry_after_ms))

    async def wait_until_allowed(self) -> None:
        """
        Wait until a request is allowed.

        Polls in slices of at most POLL_INTERVAL_MS using asyncio.sleep(),
        so other coroutines keep running while we wait.
        """
        wait_ms = self.get_time_to_wait()
        while wait_ms > 0:
            logger.debug("Rate limiter waiting", wait_ms=wait_ms)
            await asyncio.sleep(min(wait_ms, self.POLL_INTERVAL_MS) / 1000)
            wait_ms = self.get_time_to_wait()

    def get_status(self) -> dict[str, Any]:
        """Current limiter state for diagnostics."""
        self._prune(self._now_ms())
        return {
            "current": len(self._requests),
            "limit": self.limit,
            "window_ms": self.window_ms,
            "is_allowed": len(self._requests) < self.limit,
            "time_to_wait": self.get_time_to_wait(),
        }

    def reset(self) -> None:
        """Reset the rate limiter (for testing)."""
        self._requests.clear()
        logger.info("Rate limiter reset")
