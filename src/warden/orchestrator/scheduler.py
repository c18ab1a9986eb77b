"""
Fixed-interval background jobs running on the event loop.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any] | Any]


class PeriodicTask:
    """
    Runs `job` every `interval` seconds.

    The next run is only scheduled once the previous one has finished, so runs
    never overlap. Exceptions are logged and the loop carries on.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        job: Job,
        *,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self.job = job
        self.run_immediately = run_immediately
        self.runs = 0
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> Any:
        result = self.job()
        if inspect.isawaitable(result):
            result = await result
        self.runs += 1
        return result

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception(f"Periodic task {self.name} failed")
            await asyncio.sleep(self.interval)

    async def start(self) -> None:
        if self._running:
            logger.warning(f"Periodic task {self.name} is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"Started periodic task {self.name} (every {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Stopped periodic task {self.name}")
