"""
Rolling-window rate limiter for outbound Flume API requests.

The Flume API allows a fixed number of requests per account over any
trailing hour. The limiter records the timestamp of every granted request
and refuses a new one while the trailing window already holds the ceiling.
A refused request leaves the recorded state untouched.

Operations:
- try_acquire(): Grant and record one request, or refuse.
- retry_after(): Seconds until the oldest grant leaves the window.
- remaining: Grants still available right now.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

DEFAULT_MAX_REQUESTS = 120
DEFAULT_WINDOW_S = 3600.0


class RateLimiter:
    """Sliding-log limiter over a trailing time window.

    Both scheduler cycles share one instance, so their combined rate is what
    stays under the ceiling. All state changes happen under a lock.

    Args:
        max_requests: Maximum grants inside any trailing window.
        window_s: Window length in seconds.
        clock: Monotonic time source, injectable for tests.

    Raises:
        ValueError: If *max_requests* or *window_s* is not positive.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_s: float = DEFAULT_WINDOW_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")
        self._max_requests = max_requests
        self._window_s = window_s
        self._clock = clock
        self._grants: deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def remaining(self) -> int:
        """Number of requests that would be granted right now."""
        with self._lock:
            self._expire(self._clock())
            return self._max_requests - len(self._grants)

    def try_acquire(self) -> bool:
        """Grant one request if the trailing window has room.

        Returns:
            ``True`` and records the grant time, or ``False`` with no state
            change when the window is full.
        """
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._grants) >= self._max_requests:
                return False
            self._grants.append(now)
            return True

    def retry_after(self) -> float:
        """Seconds until a request would be granted (0 if one would be now)."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._grants) < self._max_requests:
                return 0.0
            return max(0.0, self._grants[0] + self._window_s - now)

    def _expire(self, now: float) -> None:
        """Drop grants that have left the trailing window. Caller holds the lock."""
        cutoff = now - self._window_s
        while self._grants and self._grants[0] <= cutoff:
            self._grants.popleft()
