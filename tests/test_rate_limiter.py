"""
Tests for the sliding-window rate limiter.
"""

import pytest

from supportbot.exchange.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    """Manual clock whose sleep advances time."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestSlidingWindowRateLimiter:
    """Window accounting with an injected clock."""

    @pytest.mark.asyncio
    async def test_under_limit_does_not_wait(self, clock):
        """Requests up to the limit pass immediately."""
        limiter = SlidingWindowRateLimiter(3, 1.0, 0.1, clock=clock, sleep=clock.sleep)
        for _ in range(3):
            await limiter.acquire()
        assert clock.sleeps == []
        assert limiter.status()["current_requests"] == 3

    @pytest.mark.asyncio
    async def test_full_window_waits_for_oldest_plus_buffer(self, clock):
        """The next request waits until the oldest leaves the window, plus the buffer."""
        limiter = SlidingWindowRateLimiter(3, 1.0, 0.1, clock=clock, sleep=clock.sleep)
        for _ in range(4):
            await limiter.acquire()
        assert clock.sleeps == [pytest.approx(1.1)]
        assert limiter.status()["current_requests"] == 1

    @pytest.mark.asyncio
    async def test_window_slides(self, clock):
        """Only timestamps older than the window are released."""
        limiter = SlidingWindowRateLimiter(2, 1.0, 0.1, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        clock.now = 0.5
        await limiter.acquire()
        clock.now = 0.6
        await limiter.acquire()

        assert clock.sleeps == [pytest.approx(0.5)]
        assert clock.now == pytest.approx(1.1)
        # The 0.5 request is still inside the window
        assert limiter.status()["current_requests"] == 2

    @pytest.mark.asyncio
    async def test_reset_clears_window(self, clock):
        """reset() forgets recorded requests."""
        limiter = SlidingWindowRateLimiter(1, 1.0, 0.1, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        limiter.reset()
        await limiter.acquire()
        assert clock.sleeps == []

    def test_status_reports_configuration(self, clock):
        """status() exposes limits for diagnostics."""
        limiter = SlidingWindowRateLimiter(10, 1.0, clock=clock, sleep=clock.sleep)
        assert limiter.status() == {"current_requests": 0, "max_requests": 10, "window_seconds": 1.0}

    def test_invalid_limits_rejected(self):
        """Zero capacity or window is a programming error."""
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0, 1.0)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(1, 0)
