"""Async database connection and operations for the agent orchestration stack."""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, event, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    ActiveAgent,
    AgentIdentity,
    AgentIdentityAudit,
    AgentResourceMetric,
    Base,
    ConsensusCheckpoint,
    ConsensusCheckpointEvent,
    DeliverableCheckpoint,
    DriftDetectionEvent,
    ResourceExhaustionEvent,
    Task,
    TaskEmbedding,
    TaskRelationship,
    utcnow,
)


class Database:
    """Owns the async engine and session factory for one database URL."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            # In-memory databases live only as long as their single connection
            if ":memory:" in url or url.endswith("://"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)
        if url.startswith("sqlite"):
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables (for development/testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
                raise


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# =============================================================================
# Task Operations
# =============================================================================


async def create_task(session: AsyncSession, **fields: Any) -> Task:
    task = Task(**fields)
    session.add(task)
    await session.flush()
    return task


async def get_task(session: AsyncSession, task_id: str) -> Task | None:
    return await session.get(Task, task_id)


async def list_tasks(
    session: AsyncSession,
    *,
    status: str | None = None,
    session_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> Sequence[Task]:
    query = select(Task)
    if status:
        query = query.where(Task.status == status)
    if session_id:
        query = query.where(Task.session_id == session_id)
    query = query.order_by(Task.created_at.desc()).limit(limit).offset(offset)
    result = await session.execute(query)
    return result.scalars().all()


async def update_task(session: AsyncSession, task_id: str, **fields: Any) -> Task | None:
    task = await session.get(Task, task_id)
    if task is None:
        return None
    for key, value in fields.items():
        setattr(task, key, value)
    await session.flush()
    return task


async def delete_task(session: AsyncSession, task_id: str) -> bool:
    task = await session.get(Task, task_id)
    if task is None:
        return False
    await session.delete(task)
    await session.flush()
    return True


async def get_parent_task_id(session: AsyncSession, task_id: str) -> str | None:
    result = await session.execute(select(Task.parent_task_id).where(Task.id == task_id))
    return result.scalar_one_or_none()


# =============================================================================
# Active Agent Operations
# =============================================================================


async def upsert_active_agent(session: AsyncSession, **fields: Any) -> ActiveAgent:
    agent = await session.get(ActiveAgent, fields["id"])
    if agent is None:
        agent = ActiveAgent(**fields)
        session.add(agent)
    else:
        for key, value in fields.items():
            setattr(agent, key, value)
    await session.flush()
    return agent


async def update_active_agent_status(session: AsyncSession, agent_id: str, status: str) -> None:
    await session.execute(update(ActiveAgent).where(ActiveAgent.id == agent_id).values(status=status))


async def delete_active_agent(session: AsyncSession, agent_id: str) -> None:
    await session.execute(delete(ActiveAgent).where(ActiveAgent.id == agent_id))


async def list_active_agents(session: AsyncSession) -> Sequence[ActiveAgent]:
    result = await session.execute(select(ActiveAgent).order_by(ActiveAgent.created_at))
    return result.scalars().all()


# =============================================================================
# Identity Operations
# =============================================================================


async def get_identity(session: AsyncSession, agent_id: str) -> AgentIdentity | None:
    return await session.get(AgentIdentity, agent_id)


async def get_identity_by_name(session: AsyncSession, display_name: str) -> AgentIdentity | None:
    result = await session.execute(
        select(AgentIdentity)
        .where(AgentIdentity.display_name == display_name)
        .order_by(AgentIdentity.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_identities(
    session: AsyncSession,
    *,
    status: str | None = None,
    agent_type: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> Sequence[AgentIdentity]:
    query = select(AgentIdentity)
    if status:
        query = query.where(AgentIdentity.status == status)
    if agent_type:
        query = query.where(AgentIdentity.agent_type == agent_type)
    query = query.order_by(AgentIdentity.created_at.desc()).limit(limit).offset(offset)
    result = await session.execute(query)
    return result.scalars().all()


async def add_identity_audit(session: AsyncSession, **fields: Any) -> AgentIdentityAudit:
    entry = AgentIdentityAudit(**fields)
    session.add(entry)
    await session.flush()
    return entry


async def get_identity_audit(session: AsyncSession, agent_id: str, limit: int = 100) -> Sequence[AgentIdentityAudit]:
    result = await session.execute(
        select(AgentIdentityAudit)
        .where(AgentIdentityAudit.agent_id == agent_id)
        .order_by(AgentIdentityAudit.timestamp.desc(), AgentIdentityAudit.seq.desc())
        .limit(limit)
    )
    return result.scalars().all()


# =============================================================================
# Consensus Operations
# =============================================================================


async def add_checkpoint_event(session: AsyncSession, **fields: Any) -> ConsensusCheckpointEvent:
    entry = ConsensusCheckpointEvent(**fields)
    session.add(entry)
    await session.flush()
    return entry


async def get_checkpoint_by_task_id(session: AsyncSession, task_id: str) -> ConsensusCheckpoint | None:
    result = await session.execute(
        select(ConsensusCheckpoint)
        .where(ConsensusCheckpoint.task_id == task_id)
        .order_by(ConsensusCheckpoint.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_pending_checkpoints(
    session: AsyncSession, limit: int = 50, offset: int = 0
) -> Sequence[ConsensusCheckpoint]:
    result = await session.execute(
        select(ConsensusCheckpoint)
        .where(ConsensusCheckpoint.status == "pending")
        .order_by(ConsensusCheckpoint.created_at)
        .limit(limit)
        .offset(offset)
    )
    return result.scalars().all()


async def list_expired_pending_checkpoints(session: AsyncSession, now: datetime) -> Sequence[ConsensusCheckpoint]:
    result = await session.execute(
        select(ConsensusCheckpoint).where(
            ConsensusCheckpoint.status == "pending", ConsensusCheckpoint.expires_at < now
        )
    )
    return result.scalars().all()


async def get_checkpoint_events(session: AsyncSession, checkpoint_id: str) -> Sequence[ConsensusCheckpointEvent]:
    result = await session.execute(
        select(ConsensusCheckpointEvent)
        .where(ConsensusCheckpointEvent.checkpoint_id == checkpoint_id)
        .order_by(ConsensusCheckpointEvent.created_at)
    )
    return result.scalars().all()


# =============================================================================
# Drift Detection Operations
# =============================================================================


async def upsert_task_embedding(
    session: AsyncSession, task_id: str, embedding: list[float], model: str
) -> TaskEmbedding:
    row = await session.get(TaskEmbedding, task_id)
    if row is None:
        row = TaskEmbedding(task_id=task_id, embedding=embedding, model=model, dimensions=len(embedding))
        session.add(row)
    else:
        row.embedding = embedding
        row.model = model
        row.dimensions = len(embedding)
        row.created_at = utcnow()
    await session.flush()
    return row


async def get_task_embedding(session: AsyncSession, task_id: str) -> TaskEmbedding | None:
    return await session.get(TaskEmbedding, task_id)


async def get_task_embeddings(session: AsyncSession, task_ids: Sequence[str]) -> Sequence[TaskEmbedding]:
    if not task_ids:
        return []
    result = await session.execute(select(TaskEmbedding).where(TaskEmbedding.task_id.in_(task_ids)))
    return result.scalars().all()


async def find_task_relationship(
    session: AsyncSession, from_task_id: str, to_task_id: str, relationship_type: str
) -> TaskRelationship | None:
    result = await session.execute(
        select(TaskRelationship).where(
            TaskRelationship.from_task_id == from_task_id,
            TaskRelationship.to_task_id == to_task_id,
            TaskRelationship.relationship_type == relationship_type,
        )
    )
    return result.scalar_one_or_none()


async def add_task_relationship(session: AsyncSession, **fields: Any) -> TaskRelationship:
    row = TaskRelationship(**fields)
    session.add(row)
    await session.flush()
    return row


async def get_task_relationships(
    session: AsyncSession, task_id: str, direction: str = "both"
) -> Sequence[TaskRelationship]:
    if direction == "outgoing":
        condition = TaskRelationship.from_task_id == task_id
    elif direction == "incoming":
        condition = TaskRelationship.to_task_id == task_id
    else:
        condition = or_(TaskRelationship.from_task_id == task_id, TaskRelationship.to_task_id == task_id)
    result = await session.execute(
        select(TaskRelationship).where(condition).order_by(TaskRelationship.created_at)
    )
    return result.scalars().all()


async def add_drift_event(session: AsyncSession, **fields: Any) -> DriftDetectionEvent:
    row = DriftDetectionEvent(**fields)
    session.add(row)
    await session.flush()
    return row


async def get_drift_action_counts(session: AsyncSession, since: datetime | None = None) -> dict[str, Any]:
    query = select(
        DriftDetectionEvent.action_taken,
        func.count(DriftDetectionEvent.id),
        func.coalesce(func.avg(DriftDetectionEvent.similarity_score), 0),
    ).group_by(DriftDetectionEvent.action_taken)
    if since is not None:
        query = query.where(DriftDetectionEvent.created_at >= since)
    rows = (await session.execute(query)).all()
    return {action: {"count": int(count), "avg_similarity": float(avg)} for action, count, avg in rows}


async def list_drift_events(session: AsyncSession, limit: int = 50) -> Sequence[DriftDetectionEvent]:
    result = await session.execute(
        select(DriftDetectionEvent).order_by(DriftDetectionEvent.created_at.desc()).limit(limit)
    )
    return result.scalars().all()


# =============================================================================
# Resource Exhaustion Operations
# =============================================================================


async def upsert_resource_metric(session: AsyncSession, **fields: Any) -> AgentResourceMetric:
    row = await session.get(AgentResourceMetric, fields["agent_id"])
    if row is None:
        row = AgentResourceMetric(**fields)
        session.add(row)
    else:
        for key, value in fields.items():
            setattr(row, key, value)
    row.updated_at = utcnow()
    await session.flush()
    return row


async def delete_resource_metric(session: AsyncSession, agent_id: str) -> None:
    await session.execute(delete(AgentResourceMetric).where(AgentResourceMetric.agent_id == agent_id))


async def list_resource_metrics(session: AsyncSession) -> Sequence[AgentResourceMetric]:
    result = await session.execute(select(AgentResourceMetric))
    return result.scalars().all()


async def add_resource_event(session: AsyncSession, **fields: Any) -> ResourceExhaustionEvent:
    row = ResourceExhaustionEvent(**fields)
    session.add(row)
    await session.flush()
    return row


async def get_resource_event_counts(session: AsyncSession, since: datetime | None = None) -> dict[str, int]:
    query = select(ResourceExhaustionEvent.phase, func.count(ResourceExhaustionEvent.id)).group_by(
        ResourceExhaustionEvent.phase
    )
    if since is not None:
        query = query.where(ResourceExhaustionEvent.created_at >= since)
    rows = (await session.execute(query)).all()
    return {phase: int(count) for phase, count in rows}


async def list_resource_events(
    session: AsyncSession,
    agent_id: str | None = None,
    limit: int = 50,
    since: datetime | None = None,
) -> Sequence[ResourceExhaustionEvent]:
    query = select(ResourceExhaustionEvent)
    if agent_id:
        query = query.where(ResourceExhaustionEvent.agent_id == agent_id)
    if since is not None:
        query = query.where(ResourceExhaustionEvent.created_at >= since)
    result = await session.execute(query.order_by(ResourceExhaustionEvent.created_at.desc()).limit(limit))
    return result.scalars().all()


async def add_deliverable(session: AsyncSession, **fields: Any) -> DeliverableCheckpoint:
    row = DeliverableCheckpoint(**fields)
    session.add(row)
    await session.flush()
    return row


async def delete_deliverables(session: AsyncSession, agent_id: str) -> None:
    await session.execute(delete(DeliverableCheckpoint).where(DeliverableCheckpoint.agent_id == agent_id))
