import asyncio
import logging
from typing import Optional

from lockout import LockoutStore

logger = logging.getLogger("newsapi.sweeper")


class LockoutSweeper:
    """
    Periodically clears expired lockouts off the request path.

    - Never blocks request handling (the store call runs in a worker thread)
    - Failures are logged and the loop keeps going
    - Warning on first failure, error after 3 consecutive failures
    """

    def __init__(self, store: LockoutStore, interval_seconds: float):
        self._store = store
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._consecutive_failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Lockout sweeper started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Lockout sweeper stopped")

    async def sweep_once(self) -> int:
        cleared = await asyncio.to_thread(self._store.cleanup_expired)
        if self._consecutive_failures > 0:
            logger.info("Lockout sweep recovered after failures")
        self._consecutive_failures = 0
        return cleared

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception as e:
                self._consecutive_failures += 1

                if self._consecutive_failures == 1:
                    logger.warning(f"Lockout sweep failed: {type(e).__name__}")
                elif self._consecutive_failures >= 3:
                    logger.error(
                        f"Lockout sweep failed {self._consecutive_failures} times consecutively: {type(e).__name__}"
                    )
