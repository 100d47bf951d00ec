"""Keyed registry for background asyncio tasks.

The wave controller runs gate pipelines concurrently, one per issue. Tasks are
keyed by issue id so the same issue never has two pipelines in flight, and
finished tasks stay in the registry until the controller collects them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskRegistry(Generic[T]):
    """Tracks keyed background tasks until their result is collected.

    Example:
        registry: TaskRegistry[bool] = TaskRegistry()
        registry.spawn("issue-1", run_gates("issue-1"))
        ...
        for key, task in registry.pop_finished():
            handle(key, task.result())
        await registry.shutdown(timeout=5.0)
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[T]] = {}

    def _on_task_done(self, task: asyncio.Task[T]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def spawn(self, key: str, coro: Coroutine[object, object, T]) -> asyncio.Task[T]:
        """Spawn a tracked task under `key`.

        If a task with the same key is still running, the coroutine is
        discarded and the running task is returned. A finished but uncollected
        task under the same key is replaced and its result dropped.
        """
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            coro.close()
            logger.debug("Task %s already running, not spawning again", key)
            return existing
        if existing is not None:
            logger.debug("Replacing finished, uncollected task %s", key)

        task = asyncio.create_task(coro, name=key)
        task.add_done_callback(self._on_task_done)
        self._tasks[key] = task
        logger.debug("Spawned tracked task: %s (total: %d)", key, len(self._tasks))
        return task

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def pop_finished(self) -> list[tuple[str, asyncio.Task[T]]]:
        """Remove and return every task that is done, in spawn order."""
        finished = [(key, task) for key, task in self._tasks.items() if task.done()]
        for key, _ in finished:
            del self._tasks[key]
        return finished

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all tracked tasks and wait for them to complete."""
        if not self._tasks:
            logger.debug("No tasks to shutdown")
            return

        task_count = len(self._tasks)
        logger.info("Shutting down %d tracked tasks (timeout=%.1fs)", task_count, timeout)
        for task in self._tasks.values():
            if not task.done():
                task.cancel()

        _, pending = await asyncio.wait(list(self._tasks.values()), timeout=timeout)
        if pending:
            logger.warning("Shutdown timeout: %d/%d tasks still pending after %.1fs", len(pending), task_count, timeout)
        self._tasks.clear()

    def task_count(self) -> int:
        return len(self._tasks)
