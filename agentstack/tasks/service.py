"""Task creation pipeline: dispatch, drift, consensus, persist, index."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .. import db as dbops
from ..agents.registry import AgentRegistry
from ..coordination.queue import DEFAULT_PRIORITY
from ..db import Database
from ..errors import (
    CheckpointNotFound,
    DriftPreventedError,
    InvalidTaskError,
    TaskNotFound,
    UnknownAgentType,
)
from ..events import EventEmitter, EventType
from ..models import Task, new_id, utcnow
from .consensus import CheckpointStatus, ConsensusCheckResult, ConsensusService, ProposedSubtask
from .dispatcher import DispatchDecision, SmartDispatcher
from .drift import DriftAction, DriftCheckResult, DriftDetectionService, RelationshipType

if TYPE_CHECKING:
    from ..coordination.topology import HierarchicalCoordinator

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskCreateResult:
    task: Task
    dispatch: DispatchDecision | None = None
    drift: DriftCheckResult | None = None
    consensus: ConsensusCheckResult | None = None
    checkpoint_id: str | None = None

    @property
    def awaiting_consensus(self) -> bool:
        return self.checkpoint_id is not None


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "session_id": task.session_id,
        "agent_type": task.agent_type,
        "input": task.input,
        "output": task.output,
        "status": task.status,
        "priority": task.priority,
        "parent_task_id": task.parent_task_id,
        "risk_level": task.risk_level,
        "depth": task.depth,
        "consensus_checkpoint_id": task.consensus_checkpoint_id,
        "assigned_agent_id": task.assigned_agent_id,
        "error": task.error,
        "created_at": task.created_at.isoformat(),
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


class TaskService:
    def __init__(
        self,
        db: Database,
        registry: AgentRegistry,
        *,
        consensus: ConsensusService,
        drift: DriftDetectionService,
        dispatcher: SmartDispatcher | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self.db = db
        self.registry = registry
        self.consensus = consensus
        self.drift = drift
        self.dispatcher = dispatcher
        self.events = events

    async def create_task(
        self,
        input: str,
        agent_type: str | None = None,
        *,
        session_id: str | None = None,
        parent_task_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> TaskCreateResult:
        if not input or not input.strip():
            raise InvalidTaskError("Task input must not be empty")

        dispatch: DispatchDecision | None = None
        drift: DriftCheckResult | None = None
        checkpoint_id: str | None = None

        if agent_type is None:
            decision = await self.dispatcher.dispatch(input) if self.dispatcher else None
            if decision is None:
                raise InvalidTaskError("agent_type is required when the smart dispatcher is disabled")
            dispatch = decision
            agent_type = decision.agent_type
        if not self.registry.has(agent_type):
            raise UnknownAgentType(agent_type)

        if parent_task_id:
            async with self.db.session() as session:
                if await dbops.get_task(session, parent_task_id) is None:
                    raise TaskNotFound(parent_task_id)

            drift = await self.drift.check_drift(input, agent_type, parent_task_id)
            if drift.action == DriftAction.PREVENTED:
                logger.warning(
                    "Task creation prevented: similarity %.3f with %s",
                    drift.max_similarity,
                    drift.most_similar_task_id,
                )
                raise DriftPreventedError(drift)

        task_id = new_id()
        depth = await self.consensus.calculate_task_depth(parent_task_id)
        risk_level = self.consensus.estimate_risk_level(agent_type, input)
        consensus = self.consensus.requires_consensus(risk_level, depth, parent_task_id)
        if consensus.requires_consensus:
            checkpoint = await self.consensus.create_checkpoint(
                parent_task_id,
                [
                    ProposedSubtask(
                        id=task_id,
                        agent_type=agent_type,
                        input=input,
                        estimated_risk_level=risk_level,
                        parent_task_id=parent_task_id,
                    )
                ],
                risk_level,
                parent_task_id=parent_task_id,
            )
            checkpoint_id = checkpoint.id
            logger.info("Task %s awaits consensus (%s)", task_id, consensus.reason)

        async with self.db.session() as session:
            task = await dbops.create_task(
                session,
                id=task_id,
                session_id=session_id,
                agent_type=agent_type,
                input=input,
                status=TaskStatus.PENDING.value,
                priority=priority,
                parent_task_id=parent_task_id,
                risk_level=risk_level.value,
                depth=depth,
                consensus_checkpoint_id=checkpoint_id,
                created_at=utcnow(),
            )

        await self.drift.index_task(task_id, input)
        if parent_task_id:
            await self.drift.create_task_relationship(parent_task_id, task_id, RelationshipType.PARENT_OF)

        logger.info("Created task %s (%s, risk=%s, depth=%d)", task_id, agent_type, risk_level.value, depth)
        if self.events:
            self.events.publish(EventType.TASK_CREATED, task_to_dict(task))
        return TaskCreateResult(task, dispatch, drift, consensus, checkpoint_id)

    async def get_task(self, task_id: str) -> Task | None:
        async with self.db.session() as session:
            return await dbops.get_task(session, task_id)

    async def list_tasks(
        self,
        *,
        status: str | None = None,
        session_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[Task]:
        async with self.db.session() as session:
            return await dbops.list_tasks(session, status=status, session_id=session_id, limit=limit, offset=offset)

    async def assign_task(self, task_id: str, agent_id: str) -> Task:
        async with self.db.session() as session:
            task = await dbops.update_task(
                session, task_id, assigned_agent_id=agent_id, status=TaskStatus.ASSIGNED.value
            )
        if task is None:
            raise TaskNotFound(task_id)
        logger.debug("Task %s assigned to %s", task_id, agent_id)
        return task

    async def complete_task(
        self,
        task_id: str,
        output: str | None = None,
        *,
        status: TaskStatus = TaskStatus.COMPLETED,
        error: str | None = None,
    ) -> Task:
        status = TaskStatus(status)
        if status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            raise InvalidTaskError(f"Completion status must be completed or failed, got {status.value}")
        async with self.db.session() as session:
            task = await dbops.update_task(
                session, task_id, output=output, status=status.value, error=error, completed_at=utcnow()
            )
        if task is None:
            raise TaskNotFound(task_id)
        if self.events:
            event_type = EventType.TASK_COMPLETED if status == TaskStatus.COMPLETED else EventType.TASK_FAILED
            self.events.publish(event_type, task_to_dict(task))
        logger.info("Task %s %s", task_id, status.value)
        return task

    async def delete_task(self, task_id: str) -> bool:
        """Embeddings and relationships go with the task; drift events are kept."""
        async with self.db.session() as session:
            deleted = await dbops.delete_task(session, task_id)
        if deleted:
            logger.info("Deleted task %s", task_id)
        return deleted

    async def release_approved(
        self, checkpoint_id: str, coordinator: HierarchicalCoordinator | None = None
    ) -> list[Task]:
        """Queue the tasks a decided checkpoint approved and fail the rest."""
        checkpoint = await self.consensus.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFound(checkpoint_id)
        if checkpoint.status == CheckpointStatus.PENDING.value:
            return []

        approved_ids = {s.id for s in await self.consensus.get_approved_subtasks(checkpoint_id)}
        released: list[Task] = []
        async with self.db.session() as session:
            for proposal in checkpoint.proposed_subtasks:
                task = await dbops.get_task(session, proposal["id"])
                if task is None or task.status != TaskStatus.PENDING.value:
                    continue
                if task.id in approved_ids:
                    released.append(task)
                else:
                    task.status = TaskStatus.FAILED.value
                    task.error = f"Consensus checkpoint {checkpoint.status}"
                    task.completed_at = utcnow()

        if coordinator is not None:
            for task in released:
                coordinator.submit_task(task, task.priority)
        logger.info(
            "Checkpoint %s released %d of %d task(s)",
            checkpoint_id,
            len(released),
            len(checkpoint.proposed_subtasks),
        )
        return released

