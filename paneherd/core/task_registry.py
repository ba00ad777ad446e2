"""Registry for fire-and-forget asyncio tasks owned by the daemon.

Event handlers, layout recalculations and the event stream all run as
background tasks. Holding them here keeps a strong reference until they
finish, surfaces their exceptions in the log, and lets shutdown cancel
whatever is still running.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Tracks background tasks until they finish or are cancelled.

    Example:
        registry = TaskRegistry()
        registry.spawn(manager.on_session_created(event), name="session-created")
        await registry.shutdown(timeout=5.0)
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()
        self._closed = False

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    def names(self) -> list[str]:
        return sorted(task.get_name() for task in self._tasks)

    def _on_task_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def spawn(self, coro: Coroutine[object, object, T], name: str | None = None) -> asyncio.Task[T]:
        """Start `coro` as a tracked task.

        After shutdown the coroutine is still scheduled but cancelled at once,
        so callers never leak an un-awaited coroutine.
        """
        task = asyncio.create_task(coro, name=name)
        if self._closed:
            logger.debug("Registry closed, cancelling new task %s", task.get_name())
            task.cancel()
            return task

        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._on_task_done)  # type: ignore[arg-type]
        logger.debug("Spawned tracked task: %s (total: %d)", task.get_name(), len(self._tasks))
        return task

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every tracked task and wait up to `timeout` seconds for them."""
        self._closed = True
        if not self._tasks:
            return

        tasks = list(self._tasks)
        logger.info(
            "Cancelling %d background task(s) (timeout=%.1fs): %s", len(tasks), timeout, ", ".join(self.names())
        )
        for task in tasks:
            task.cancel()

        current = asyncio.current_task()
        waitable = [task for task in tasks if task is not current]
        if not waitable:
            return
        _, pending = await asyncio.wait(waitable, timeout=timeout)
        for task in pending:
            logger.warning("Task %s still pending after %.1fs", task.get_name(), timeout)
