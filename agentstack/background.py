"""Supervision for fire-and-forget asyncio work."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Keeps strong references to detached tasks and logs their failures."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task %s failed: %s", task.get_name(), exc)

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def drain(self, timeout: float = 10.0) -> None:
        """Await outstanding work, cancelling whatever misses the deadline."""
        current = asyncio.current_task()
        # Tasks may spawn follow-up tasks, so keep going until nothing is left
        while True:
            pending = [t for t in self._tasks if t is not current and not t.done()]
            if not pending:
                return
            _, still_pending = await asyncio.wait(pending, timeout=timeout)
            if still_pending:
                logger.warning("%d background task(s) did not finish in %ss, cancelling", len(still_pending), timeout)
                for task in still_pending:
                    task.cancel()
                return

    async def cancel_all(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
