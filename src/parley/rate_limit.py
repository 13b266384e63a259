"""
Sliding-window rate limiter for outbound inference calls.

One limiter is shared by every conversation in the process. Before a
call, if the trailing window already holds max_requests calls, the
caller blocks until the oldest entry expires (plus a small buffer) and
then rechecks. This is not a fair queue: callers that wake at the same
time race for the freed slot.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
WAKE_BUFFER_SECONDS = 0.01


class SlidingWindowRateLimiter:
    """Blocks callers so that at most max_requests start per window."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """
        Take a slot, blocking while the window is full.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._evict(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return waited
                wait = self.window_seconds - (now - self._timestamps[0]) + WAKE_BUFFER_SECONDS

            logger.debug(f"Rate limit reached ({self.max_requests}/window), waiting {wait:.2f}s")
            self._sleep(wait)
            waited += wait

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    @property
    def in_window(self) -> int:
        """Number of calls currently counted against the window."""
        with self._lock:
            self._evict(self._clock())
            return len(self._timestamps)
