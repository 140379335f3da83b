"""In-memory priority task queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .emitter import Emitter

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5


@dataclass
class QueuedTask:
    task: Any
    priority: int
    added_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    assigned_to: str | None = None

    @property
    def task_id(self) -> str:
        return self.task.id


class TaskQueue(Emitter):
    """Higher priority first, FIFO within a priority.

    Events: ``task:added``, ``task:assigned``, ``task:completed``, ``queue:empty``.
    A dequeued task sits in the processing partition until it is completed
    or requeued.
    """

    def __init__(self) -> None:
        super().__init__()
        self._queue: list[QueuedTask] = []
        self._processing: dict[str, QueuedTask] = {}

    def enqueue(self, task: Any, priority: int = DEFAULT_PRIORITY) -> QueuedTask:
        entry = QueuedTask(task=task, priority=priority)
        index = next((i for i, e in enumerate(self._queue) if e.priority < priority), len(self._queue))
        self._queue.insert(index, entry)
        logger.debug("Task enqueued: %s (priority=%d, queued=%d)", task.id, priority, len(self._queue))
        self.emit("task:added", entry)
        return entry

    def dequeue(self, agent_type: str | None = None) -> QueuedTask | None:
        if agent_type:
            index = next((i for i, e in enumerate(self._queue) if e.task.agent_type == agent_type), None)
        else:
            index = 0 if self._queue else None
        if index is None:
            return None
        entry = self._queue.pop(index)
        self._processing[entry.task_id] = entry
        logger.debug("Task dequeued: %s", entry.task_id)
        return entry

    def assign(self, task_id: str, agent_id: str) -> bool:
        entry = self._processing.get(task_id)
        if entry is None:
            return False
        entry.assigned_to = agent_id
        self.emit("task:assigned", entry, agent_id)
        logger.debug("Task %s assigned to %s", task_id, agent_id)
        return True

    def complete(self, task_id: str) -> bool:
        entry = self._processing.pop(task_id, None)
        if entry is None:
            return False
        self.emit("task:completed", entry)
        logger.debug("Task completed: %s", task_id)
        if self.is_empty:
            self.emit("queue:empty")
        return True

    def requeue(self, task_id: str) -> bool:
        entry = self._processing.pop(task_id, None)
        if entry is None:
            return False
        entry.assigned_to = None
        self.enqueue(entry.task, entry.priority - 1)
        logger.debug("Task requeued: %s", task_id)
        return True

    def get_status(self) -> dict[str, int]:
        return {
            "queued": len(self._queue),
            "processing": len(self._processing),
            "total": len(self._queue) + len(self._processing),
        }

    def peek(self, limit: int = 10) -> list[QueuedTask]:
        return self._queue[:limit]

    def get_processing(self) -> list[QueuedTask]:
        return list(self._processing.values())

    def clear(self) -> None:
        self._queue.clear()
        self._processing.clear()
        logger.debug("Queue cleared")

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_empty(self) -> bool:
        return not self._queue and not self._processing
