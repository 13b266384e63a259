"""
Tests for the sliding-window rate limiter.
"""

import threading

import pytest

from parley.rate_limit import WAKE_BUFFER_SECONDS, SlidingWindowRateLimiter


class FakeClock:
    """Manual clock; sleeping advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestSlidingWindowRateLimiter:
    """Tests for blocking and window eviction."""

    def test_under_limit_does_not_wait(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(3, clock=clock, sleep=clock.sleep)
        for _ in range(3):
            assert limiter.acquire() == 0.0
        assert clock.sleeps == []
        assert limiter.in_window == 3

    def test_full_window_waits_for_oldest_entry(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(2, window_seconds=60, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.now += 10
        limiter.acquire()
        clock.now += 5

        waited = limiter.acquire()

        # oldest entry is 15s old, so it expires 45s from now
        assert waited == pytest.approx(45 + WAKE_BUFFER_SECONDS)
        assert clock.sleeps == [pytest.approx(45 + WAKE_BUFFER_SECONDS)]
        assert limiter.in_window == 2

    def test_entries_expire(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(1, window_seconds=60, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.now += 61
        assert limiter.in_window == 0
        assert limiter.acquire() == 0.0

    def test_rejects_nonpositive_limit(self) -> None:
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0)

    def test_shared_across_threads(self) -> None:
        """At most max_requests callers get through within one window."""
        limiter = SlidingWindowRateLimiter(5, window_seconds=60)
        admitted = []
        lock = threading.Lock()

        def worker() -> None:
            limiter.acquire()
            with lock:
                admitted.append(1)

        threads = [threading.Thread(target=worker, daemon=True) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=0.5)

        assert len(admitted) == 5
        assert limiter.in_window == 5
