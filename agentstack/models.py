"""SQLAlchemy models for the agent orchestration database."""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that also round-trips through SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                value = value.replace(tzinfo=UTC)
            value = value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[str]: JSONType,
        list[float]: JSONType,
        list[dict[str, Any]]: JSONType,
        datetime: UTCDateTime(),
    }


# =============================================================================
# TASKS
# =============================================================================


class Task(Base):
    """A unit of work handed to an agent."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    agent_type: Mapped[str] = mapped_column(String, nullable=False)
    input: Mapped[str] = mapped_column(Text, nullable=False)
    output: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    parent_task_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    risk_level: Mapped[str | None] = mapped_column(String, nullable=True)
    depth: Mapped[int] = mapped_column(Integer, default=0)
    consensus_checkpoint_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    assigned_agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    embedding: Mapped["TaskEmbedding | None"] = relationship(
        back_populates="task", cascade="all, delete-orphan", passive_deletes=True
    )
    outgoing_relationships: Mapped[list["TaskRelationship"]] = relationship(
        foreign_keys="TaskRelationship.from_task_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    incoming_relationships: Mapped[list["TaskRelationship"]] = relationship(
        foreign_keys="TaskRelationship.to_task_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TaskEmbedding(Base):
    """Vector representation of a task input; one row per task."""

    __tablename__ = "task_embeddings"

    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True
    )
    embedding: Mapped[list[float]] = mapped_column(nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    task: Mapped[Task] = relationship(back_populates="embedding")


class TaskRelationship(Base):
    """Directed edge between two tasks."""

    __tablename__ = "task_relationships"
    __table_args__ = (
        UniqueConstraint("from_task_id", "to_task_id", "relationship_type", name="uq_task_relationship"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    from_task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    to_task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    relationship_type: Mapped[str] = mapped_column(String, nullable=False)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class DriftDetectionEvent(Base):
    """Immutable record of a drift decision; survives task deletion."""

    __tablename__ = "drift_detection_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    task_type: Mapped[str] = mapped_column(String, nullable=False)
    ancestor_task_id: Mapped[str] = mapped_column(String(36), nullable=False)
    similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    action_taken: Mapped[str] = mapped_column(String, nullable=False)
    task_input: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)


# =============================================================================
# AGENTS
# =============================================================================


class ActiveAgent(Base):
    """Mirror of a live spawned agent so it survives a restart."""

    __tablename__ = "active_agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="idle")
    session_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    identity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class AgentIdentity(Base):
    """Persistent identity with a lifecycle that outlives any single spawn."""

    __tablename__ = "agent_identities"

    agent_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, default="created", index=True)
    capabilities: Mapped[list[str]] = mapped_column(default=list)
    version: Mapped[int] = mapped_column(Integer, default=1)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", default=dict)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    last_active_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow)
    retired_at: Mapped[datetime | None] = mapped_column(nullable=True)
    retirement_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class AgentIdentityAudit(Base):
    """Append-only audit trail for identity changes."""

    __tablename__ = "agent_identity_audit"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agent_identities.agent_id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String, nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String, nullable=True)
    new_status: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", nullable=True)
    timestamp: Mapped[datetime] = mapped_column(default=utcnow)


# =============================================================================
# CONSENSUS
# =============================================================================


class ConsensusCheckpoint(Base):
    """Pending approval for a set of proposed subtasks."""

    __tablename__ = "consensus_checkpoints"
    __table_args__ = (Index("ix_consensus_checkpoints_status_expires", "status", "expires_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    parent_task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    proposed_subtasks: Mapped[list[dict[str, Any]]] = mapped_column(default=list)
    risk_level: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending")
    reviewer_strategy: Mapped[str] = mapped_column(String, nullable=False)
    reviewer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewer_type: Mapped[str | None] = mapped_column(String, nullable=True)
    decision: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)


class ConsensusCheckpointEvent(Base):
    __tablename__ = "consensus_checkpoint_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    checkpoint_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("consensus_checkpoints.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


# =============================================================================
# RESOURCE EXHAUSTION
# =============================================================================


class AgentResourceMetric(Base):
    """Durable mirror of the in-memory per-agent counters."""

    __tablename__ = "agent_resource_metrics"

    agent_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    agent_type: Mapped[str | None] = mapped_column(String, nullable=True)
    files_read: Mapped[int] = mapped_column(Integer, default=0)
    files_written: Mapped[int] = mapped_column(Integer, default=0)
    files_modified: Mapped[int] = mapped_column(Integer, default=0)
    api_calls_count: Mapped[int] = mapped_column(Integer, default=0)
    subtasks_spawned: Mapped[int] = mapped_column(Integer, default=0)
    tokens_consumed: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime] = mapped_column(default=utcnow)
    last_deliverable_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(default=utcnow)
    phase: Mapped[str] = mapped_column(String, default="normal")
    paused_at: Mapped[datetime | None] = mapped_column(nullable=True)
    pause_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow)


class ResourceExhaustionEvent(Base):
    __tablename__ = "resource_exhaustion_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    agent_type: Mapped[str | None] = mapped_column(String, nullable=True)
    phase: Mapped[str] = mapped_column(String, nullable=False)
    action_taken: Mapped[str] = mapped_column(String, nullable=False)
    metrics: Mapped[dict[str, Any]] = mapped_column(default=dict)
    thresholds: Mapped[dict[str, Any]] = mapped_column(default=dict)
    triggered_by: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)


class DeliverableCheckpoint(Base):
    __tablename__ = "deliverable_checkpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    deliverable_type: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
