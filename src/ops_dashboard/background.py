"""
Detached tasks for side effects that must never affect their caller.

A detached task runs independently of the coroutine that spawned it. Its
exceptions are logged and counted, never re-raised. Strong references are held
until completion so the loop cannot garbage-collect a running task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class DetachedTasks:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._failure_count = 0
        self._last_error: str | None = None

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "detached") -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Detached task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self._failure_count += 1
            self._last_error = f"{exc.__class__.__name__}: {exc}"
            logger.warning(
                "Detached task %s failed (%s): %s",
                task.get_name(),
                exc.__class__.__name__,
                exc,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every running task; cancel whatever outlives the timeout."""
        while self._tasks:
            _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
            if still_running:
                for task in still_running:
                    task.cancel()
                await asyncio.wait(still_running)
                return

    def get_health(self) -> dict[str, Any]:
        return {
            "pending": len(self._tasks),
            "failureCount": self._failure_count,
            "lastError": self._last_error,
        }
