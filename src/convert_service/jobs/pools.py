from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Task = Callable[[], Awaitable[None]]


class WorkerPool:
    """A fixed number of asyncio workers draining an unbounded queue.

    ``submit`` never blocks; a saturated pool just lets the queue grow.
    ``submit_later`` parks a task on the event loop timer and queues it once
    the delay has passed. Both must be called from the event loop thread.
    """

    def __init__(self, name: str, size: int) -> None:
        if size < 1:
            raise ValueError(f"{name} pool needs at least one worker")
        self.name = name
        self.size = size
        self._queue: asyncio.Queue[Task] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._timers: dict[object, asyncio.TimerHandle] = {}
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> int:
        """Tasks queued, running, or waiting on a delay."""
        return self._pending

    async def start(self) -> None:
        if self._tasks:
            return
        for i in range(self.size):
            task = asyncio.create_task(self._worker_loop(f"{self.name}-{i+1}"))
            self._tasks.append(task)
        logger.info("Started %s pool with %d workers", self.name, self.size)

    async def stop(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        # drop anything never picked up
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._pending = 0
        self._idle.set()

    def submit(self, task: Task) -> None:
        self._track()
        self._queue.put_nowait(task)

    def submit_later(self, delay: float, task: Task) -> None:
        self._track()
        token = object()
        loop = asyncio.get_running_loop()
        self._timers[token] = loop.call_later(delay, self._release, token, task)

    async def join(self) -> None:
        """Wait until every submitted task, including delayed ones, has run."""
        await self._idle.wait()

    def _track(self) -> None:
        self._pending += 1
        self._idle.clear()

    def _release(self, token: object, task: Task) -> None:
        self._timers.pop(token, None)
        self._queue.put_nowait(task)

    def _done(self) -> None:
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    async def _worker_loop(self, name: str) -> None:
        while True:
            task = await self._queue.get()
            try:
                await task()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unhandled error in %s worker", name)
            finally:
                self._queue.task_done()
                self._done()
