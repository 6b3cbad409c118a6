"""
Detached side-effect tasks.

Side effects that must not hold a response open (analytics writes) are
submitted here. The runner keeps a strong reference to each task until it
finishes, logs failures from a done-callback, and can drain outstanding work
at shutdown.
"""

import asyncio
from typing import Coroutine, Optional, Set

from loguru import logger

from infrastructure.monitoring import MetricsCollector


class BackgroundTaskRunner:
    """Fire-and-forget executor for coroutines."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self._tasks: Set[asyncio.Task] = set()
        self._metrics = metrics

    def submit(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        self._report()
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._report()

        if task.cancelled():
            logger.debug(f"Background task {task.get_name()} cancelled")
            return

        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(
                f"Background task {task.get_name()} failed: {exc}"
            )

    def _report(self) -> None:
        if self._metrics:
            self._metrics.update_background_tasks(len(self._tasks))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks; cancel whatever is left after `timeout`."""
        if not self._tasks:
            return

        tasks = list(self._tasks)
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Cancelled {len(not_done)} background tasks at shutdown")
            await asyncio.gather(*not_done, return_exceptions=True)


__all__ = ["BackgroundTaskRunner"]
