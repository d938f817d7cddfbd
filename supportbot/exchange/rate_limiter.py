"""
Sliding-window rate limiter shared by every exchange-calling component
"""
import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict

from loguru import logger


class SlidingWindowRateLimiter:
    """
    Records request timestamps; before each call drops those older than the
    window and, when the window is full, waits until the oldest one leaves it
    (plus a small buffer) and checks again.

    One instance per account. Clock and sleep are injectable for tests.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 1.0,
        buffer_seconds: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.buffer_seconds = buffer_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()
        logger.info(f"Rate limiter initialized ({max_requests} requests / {window_seconds}s)")

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        """Wait for a free slot in the window, then record the request"""
        while True:
            async with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return
                wait_time = self.window_seconds - (now - self._timestamps[0]) + self.buffer_seconds

            logger.debug(f"Rate limit reached, waiting {wait_time:.3f}s")
            await self._sleep(max(wait_time, 0.0))

    def reset(self) -> None:
        self._timestamps.clear()

    def status(self) -> Dict[str, float]:
        self._prune(self._clock())
        return {
            "current_requests": len(self._timestamps),
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }
