"""Hierarchical topology: one coordinator agent dispatching to a bounded worker set."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..agents.spawner import AgentStatus, SpawnedAgent, Spawner
from ..errors import CapacityError
from .bus import Message, MessageBus
from .queue import DEFAULT_PRIORITY, QueuedTask, TaskQueue

logger = logging.getLogger(__name__)


def _task_id(message: Message) -> str | None:
    payload = message.payload or {}
    if isinstance(payload, dict):
        return payload.get("task_id") or payload.get("taskId")
    return None


class HierarchicalCoordinator:
    """Workers are reused when idle and spawned lazily up to ``max_workers``.

    Workers report back over the bus with ``task:completed``,
    ``task:failed`` or ``worker:ready`` addressed to the coordinator.
    """

    def __init__(
        self,
        spawner: Spawner,
        bus: MessageBus,
        *,
        max_workers: int = 5,
        session_id: str | None = None,
    ) -> None:
        self.spawner = spawner
        self.bus = bus
        self.max_workers = max_workers
        self.session_id = session_id
        self.queue = TaskQueue()
        self.coordinator: SpawnedAgent | None = None
        self.workers: dict[str, SpawnedAgent] = {}
        self._unsubscribe: Callable[[], None] | None = None
        self._unlisten: Callable[[], None] | None = None

    def initialize(self) -> SpawnedAgent:
        self.coordinator = self.spawner.spawn("coordinator", name="main-coordinator", session_id=self.session_id)
        self.spawner.update_status(self.coordinator.id, AgentStatus.RUNNING)
        self._unsubscribe = self.bus.subscribe(self.coordinator.id, self._handle_message)
        self._unlisten = self.queue.on("task:added", lambda _entry: self.assign_pending_tasks())
        logger.info("Coordinator initialized (%s)", self.coordinator.id)
        return self.coordinator

    def submit_task(self, task: Any, priority: int = DEFAULT_PRIORITY) -> None:
        self.queue.enqueue(task, priority)
        logger.debug("Task submitted: %s (priority=%d)", task.id, priority)

    def assign_pending_tasks(self) -> int:
        if self.coordinator is None:
            return 0
        assigned = 0
        while len(self.queue):
            match = self._next_assignment()
            if match is None:
                logger.debug("No available workers, waiting")
                break
            worker, entry = match
            self.queue.assign(entry.task_id, worker.id)
            self.spawner.update_status(worker.id, AgentStatus.RUNNING)
            self.bus.send(self.coordinator.id, worker.id, "task:assign", {"task": entry.task})
            logger.debug("Task %s assigned to worker %s", entry.task_id, worker.id)
            assigned += 1
        return assigned

    def _next_assignment(self) -> tuple[SpawnedAgent, QueuedTask] | None:
        """Pair an idle worker with a queued task of its type, spawning one if capacity allows."""
        for worker in self.workers.values():
            if worker.status != AgentStatus.IDLE:
                continue
            entry = self.queue.dequeue(worker.type)
            if entry is not None:
                return worker, entry
        if len(self.workers) >= self.max_workers:
            return None
        upcoming = self.queue.peek(1)
        if not upcoming:
            return None
        try:
            worker = self.spawner.spawn(upcoming[0].task.agent_type, session_id=self.session_id)
        except CapacityError as exc:
            logger.warning("Cannot spawn worker: %s", exc)
            return None
        self.workers[worker.id] = worker
        logger.info("Spawned new worker %s (%s)", worker.id, worker.type)
        return worker, self.queue.dequeue(worker.type)

    def _handle_message(self, message: Message) -> None:
        logger.debug("Coordinator received %s from %s", message.type, message.from_)
        if message.type == "task:completed":
            task_id = _task_id(message)
            if task_id:
                self.queue.complete(task_id)
            self._release_worker(message.from_)
            self.assign_pending_tasks()
        elif message.type == "task:failed":
            task_id = _task_id(message)
            if task_id:
                self.queue.requeue(task_id)
            self._release_worker(message.from_)
            self.assign_pending_tasks()
        elif message.type == "worker:ready":
            if self._release_worker(message.from_):
                self.assign_pending_tasks()

    def _release_worker(self, worker_id: str) -> bool:
        if worker_id not in self.workers:
            return False
        self.spawner.update_status(worker_id, AgentStatus.IDLE)
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "coordinator": self.coordinator,
            "workers": list(self.workers.values()),
            "queue": self.queue.get_status(),
        }

    def shutdown(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._unlisten:
            self._unlisten()
            self._unlisten = None
        for worker_id in list(self.workers):
            self.spawner.stop(worker_id)
        self.workers.clear()
        if self.coordinator is not None:
            self.spawner.stop(self.coordinator.id)
            self.coordinator = None
        self.queue.clear()
        logger.info("Coordinator shutdown")
