"""Bounded asyncio worker pool for deferred event processing.

Work items are zero-argument coroutine factories keyed by an identifier
(the event id).  The queue is bounded: :meth:`EventWorkerPool.submit`
returns ``False`` instead of blocking when it is full, and the stored
event is picked up later by a replay.  A key that is already queued or
running is not queued a second time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class FailedTask:
    key: str
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class PoolStats:
    workers: int
    submitted: int
    queued: int
    in_flight: int
    completed: int
    failed: int
    rejected: int


class EventWorkerPool:
    """Fixed number of consumers draining a bounded queue.

    Parameters
    ----------
    worker_count:
        Number of concurrent consumer tasks.
    max_size:
        Queue capacity; submissions beyond it are rejected.
    failure_history:
        How many recent failures :attr:`failures` keeps.
    """

    def __init__(self, worker_count: int = 4, max_size: int = 1000, *, failure_history: int = 100) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._worker_count = worker_count
        self._queue: asyncio.Queue[tuple[str, TaskFactory]] = asyncio.Queue(maxsize=max_size)
        self._workers: list[asyncio.Task[None]] = []
        self._keys: set[str] = set()
        self._in_flight = 0
        self._submitted = 0
        self._completed = 0
        self._failed = 0
        self._rejected = 0
        self.failures: deque[FailedTask] = deque(maxlen=failure_history)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            logger.warning("Worker pool already running; ignoring start()")
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"event-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("Event worker pool started with %d workers", self._worker_count)

    def submit(self, key: str, factory: TaskFactory) -> bool:
        """Queue *factory* under *key*; ``False`` when the queue is full."""
        if key in self._keys:
            logger.debug("Task %s already queued; not queueing again", key)
            return True
        try:
            self._queue.put_nowait((key, factory))
        except asyncio.QueueFull:
            self._rejected += 1
            return False
        self._keys.add(key)
        self._submitted += 1
        return True

    async def drain(self) -> None:
        """Wait until every queued task has finished."""
        await self._queue.join()

    async def stop(self, *, drain: bool = True) -> None:
        if drain and self._workers:
            await self.drain()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        logger.info("Event worker pool stopped")

    def stats(self) -> PoolStats:
        return PoolStats(
            workers=len(self._workers),
            submitted=self._submitted,
            queued=self._queue.qsize(),
            in_flight=self._in_flight,
            completed=self._completed,
            failed=self._failed,
            rejected=self._rejected,
        )

    async def _worker(self, index: int) -> None:
        while True:
            key, factory = await self._queue.get()
            self._in_flight += 1
            try:
                await factory()
                self._completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._failed += 1
                self.failures.append(FailedTask(key=key, error=f"{type(exc).__name__}: {exc}"))
                logger.error("Worker %d failed task %s: %s", index, key, exc, exc_info=True)
            finally:
                self._in_flight -= 1
                self._keys.discard(key)
                self._queue.task_done()
