"""
Background task runner for fire-and-forget work (provisioning after payment,
confirmation emails).

Callers never await the spawned work. Every task is tracked until it
finishes so it is not garbage collected mid-flight, and every failure is
logged from a done-callback.
"""

import asyncio
import logging
from typing import Coroutine, Any, Set

logger = logging.getLogger(__name__)


class TaskRunner:
    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.error(
                f"Background task {task.get_name()} failed: {exc!r}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks, including ones spawned while waiting."""
        while self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending and timeout is not None:
                logger.warning(f"{len(pending)} background tasks still running after {timeout}s")
                return
