"""
Request throttling for the Poloniex HTTP API.

Poloniex allows six calls per second per IP; going over it gets the address
banned for a while, so every public and trading call waits here first.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional


@dataclass
class RateLimit:
    """Rate limit configuration."""
    requests_per_second: int = 6
    requests_per_minute: int = 360


class RequestWindow:
    """
    Sliding window remembering when recent requests were sent.

    A request is allowed when fewer than ``limit`` requests were sent during
    the last ``period`` seconds.
    """

    def __init__(self, name: str, limit: int, period: float):
        self.name = name
        self.limit = limit
        self.period = period
        self.sent: Deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self.sent and now - self.sent[0] >= self.period:
            self.sent.popleft()

    def delay(self, now: float) -> float:
        """Seconds until the window has room for one more request."""
        self._expire(now)
        if len(self.sent) < self.limit:
            return 0.0
        return self.sent[0] + self.period - now

    def record(self, now: float) -> None:
        self.sent.append(now)

    @property
    def in_use(self) -> int:
        self._expire(time.monotonic())
        return len(self.sent)


class RateLimiter:
    """
    Shared throttle for all HTTP calls of a client.

    Requests are admitted in arrival order; a request only proceeds when
    every window has room for it.
    """

    def __init__(self, rate_limits: Optional[RateLimit] = None):
        """
        Initialize rate limiter.

        Args:
            rate_limits: Request limits. If None, the exchange defaults are used.
        """
        self.logger = logging.getLogger(__name__)
        self.rate_limits = rate_limits or RateLimit()
        self.windows = self._build_windows(self.rate_limits)
        self._lock = asyncio.Lock()

        # Statistics
        self.total_requests = 0
        self.rate_limited_requests = 0
        self.total_wait = 0.0

    @staticmethod
    def _build_windows(rate_limits: RateLimit) -> List[RequestWindow]:
        return [
            RequestWindow('second', rate_limits.requests_per_second, 1.0),
            RequestWindow('minute', rate_limits.requests_per_minute, 60.0),
        ]

    def _delay(self, now: float) -> float:
        return max(window.delay(now) for window in self.windows)

    def _record(self, now: float) -> None:
        for window in self.windows:
            window.record(now)
        self.total_requests += 1

    async def wait_for_request(self) -> None:
        """Block until a request may be sent and account for it."""
        async with self._lock:
            delay = self._delay(time.monotonic())
            if delay > 0:
                self.rate_limited_requests += 1
                self.total_wait += delay
                self.logger.debug(f"Throttling request for {delay:.3f}s")
                await asyncio.sleep(delay)
            self._record(time.monotonic())

    async def check_request(self) -> bool:
        """
        Account for a request only if it can be sent right away.

        Returns:
            True if the request was admitted, False if it would have to wait
        """
        async with self._lock:
            now = time.monotonic()
            if self._delay(now) > 0:
                self.rate_limited_requests += 1
                return False
            self._record(now)
            return True

    def get_stats(self) -> Dict:
        """Get rate limiter statistics."""
        return {
            'total_requests': self.total_requests,
            'rate_limited_requests': self.rate_limited_requests,
            'total_wait': self.total_wait,
            'windows': {
                window.name: {
                    'limit': window.limit,
                    'period': window.period,
                    'in_use': window.in_use,
                }
                for window in self.windows
            },
        }

    def update_rate_limits(self, rate_limits: RateLimit) -> None:
        """Replace the limits; requests already sent are forgotten."""
        self.rate_limits = rate_limits
        self.windows = self._build_windows(rate_limits)
        self.logger.info(f"Updated rate limits: {rate_limits}")
