"""
Cycle Scheduler - runs a coroutine on a fixed interval, one run at a time
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from supportbot.config.trading_config import clamp_interval


class CycleScheduler:
    """
    Loops run_cycle until stopped. A failing cycle is logged and the next one is
    still scheduled; stopping never cancels a cycle in flight, it only prevents
    the next one.
    """

    def __init__(
        self,
        name: str,
        run_cycle: Callable[[], Awaitable[Any]],
        interval: Callable[[], Any],
        clamp: bool = True,
    ):
        self.name = name
        self.run_cycle = run_cycle
        self.interval = interval
        self.clamp = clamp
        self.cycles = 0
        self.consecutive_failures = 0
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._running = False
        logger.info(f"{name} scheduler initialized")

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning(f"{self.name} scheduler already running")
            return
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-scheduler")
        logger.info(f"{self.name} scheduler started")

    async def stop(self) -> None:
        """Let the current cycle finish, then exit the loop"""
        if not self._running:
            return
        self._running = False
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info(f"{self.name} scheduler stopped after {self.cycles} cycle(s)")

    def _delay(self) -> float:
        try:
            value = self.interval()
        except Exception as e:
            logger.error(f"{self.name}: could not read interval, using default: {e}")
            value = None
        return clamp_interval(value) if self.clamp else float(value or 0)

    async def tick(self) -> bool:
        """Run a single cycle; returns False when it raised"""
        self.cycles += 1
        try:
            await self.run_cycle()
        except Exception as e:
            self.consecutive_failures += 1
            logger.exception(
                f"{self.name} cycle {self.cycles} failed "
                f"({self.consecutive_failures} in a row): {e}"
            )
            return False
        self.consecutive_failures = 0
        return True

    async def _loop(self) -> None:
        while self._running:
            await self.tick()
            if not self._running:
                break
            delay = self._delay()
            logger.debug(f"{self.name}: next cycle in {delay}s")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
