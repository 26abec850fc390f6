import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Worker:
    """Runs ``step`` every ``interval`` seconds, or sooner when woken.

    A step drains whatever the store says is due; a crashed step is logged and
    the loop carries on at the next tick.
    """

    def __init__(self, name: str, step: Callable[[], Awaitable[int]], interval: float = 5.0):
        self.name = name
        self.step = step
        self.interval = interval
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()

    def wake(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    async def run(self) -> None:
        logger.info(f"{self.name} worker started")
        while not self._stop.is_set():
            self._wake.clear()
            try:
                done = await self.step()
                if done:
                    logger.debug(f"{self.name}: {done} item(s)")
            except Exception:
                logger.exception(f"{self.name} worker step failed")
            if self._stop.is_set():
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"{self.name} worker stopped")
