"""
Tracking for fire-and-forget background tasks.

Hydration lookups, broadcast handling, audit records and reconciliation
runs are started without awaiting them. BackgroundTasks keeps a strong
reference to each one so they are not garbage-collected mid-flight, logs
unexpected failures, and lets shutdown cancel whatever is still running.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Set of running tasks owned by one engine instance."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        name: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule ``coro``; returns None (and closes it) after shutdown."""
        if self._closed:
            coro.close()
            return None
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Background task failed: {error}",
                exc_info=error,
                extra={"task": task.get_name()},
            )

    async def join(self) -> None:
        """Wait until no tracked task is running (including ones spawned meanwhile)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every running task and refuse new ones."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
