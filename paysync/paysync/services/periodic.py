"""Base class for the periodic background workers.

Subclasses implement :meth:`PeriodicWorker.run_once`; the loop calls it
every ``interval_seconds`` as an ``asyncio`` task.  Database outages are
logged and retried on the next tick instead of killing the loop.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import InterfaceError, OperationalError

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """AsyncIO background task that runs :meth:`run_once` on an interval."""

    name = "periodic-worker"

    def __init__(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the loop is active."""
        return self._running

    async def run_once(self) -> None:
        raise NotImplementedError

    async def start(self) -> None:
        if self._running:
            logger.warning("%s already running; ignoring start()", self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.info("%s started (interval=%.1fs)", self.name, self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s stopped", self.name)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("%s database error: %s", self.name, exc, exc_info=True)
            except Exception as exc:
                logger.critical("%s unexpected error: %s", self.name, exc, exc_info=True)
            await asyncio.sleep(self._interval)
