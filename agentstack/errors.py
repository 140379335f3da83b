"""Error types and helpers for the agent orchestration stack."""

from __future__ import annotations

import re
from typing import Any

import click


class AgentStackError(Exception):
    """Base class for domain errors; ``status_code`` mirrors the HTTP class."""

    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AgentStackError):
    status_code = 400


class UnknownAgentType(ValidationError):
    def __init__(self, agent_type: str) -> None:
        super().__init__(f"Unknown agent type: {agent_type}", agent_type=agent_type)
        self.agent_type = agent_type


class InvalidTaskError(ValidationError):
    pass


class NotFoundError(AgentStackError):
    status_code = 404


class AgentNotFound(NotFoundError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent not found: {agent_id}", agent_id=agent_id)


class IdentityNotFound(NotFoundError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Identity not found: {agent_id}", agent_id=agent_id)


class CheckpointNotFound(NotFoundError):
    def __init__(self, checkpoint_id: str) -> None:
        super().__init__(f"Checkpoint not found: {checkpoint_id}", checkpoint_id=checkpoint_id)


class TaskNotFound(NotFoundError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", task_id=task_id)


class StateConflictError(AgentStackError):
    status_code = 409


class InvalidTransition(StateConflictError):
    def __init__(self, current: str, target: str, allowed: list[str]) -> None:
        allowed_text = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f"Invalid status transition: {current} -> {target}. "
            f"Allowed transitions from {current}: {allowed_text}",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class RetiredIdentityError(StateConflictError):
    pass


class CheckpointNotPending(StateConflictError):
    def __init__(self, status: str) -> None:
        super().__init__(f"Checkpoint is already {status}", status=status)
        self.status = status


class CheckpointExpired(StateConflictError):
    def __init__(self) -> None:
        super().__init__("Checkpoint has expired")


class DriftPreventedError(StateConflictError):
    """Raised when task creation is blocked by drift detection."""

    def __init__(self, result: Any) -> None:
        super().__init__(
            f"Task rejected: too similar to ancestor task {result.most_similar_task_id} "
            f"(similarity {result.max_similarity:.3f})"
        )
        self.result = result


class AgentPausedError(StateConflictError):
    def __init__(self, agent_id: str, reason: str | None = None) -> None:
        super().__init__(f"Agent {agent_id} is paused: {reason or 'resource limits'}", agent_id=agent_id)


class CapacityError(AgentStackError):
    status_code = 429


class CapacityExceeded(CapacityError):
    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Maximum number of concurrent agents reached ({limit}). "
            "Stop some agents before spawning new ones.",
            limit=limit,
        )
        self.limit = limit


class DuplicateAgentName(CapacityError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Agent with name '{name}' already exists", name=name)


class ProviderError(AgentStackError):
    """Raised when an LLM or embedding backend fails."""

    status_code = 502


class ProviderUnavailableError(ProviderError):
    status_code = 503

    def __init__(self, provider: str) -> None:
        super().__init__(f"Provider '{provider}' is not available", provider=provider)
        self.provider = provider


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _PG_MISSING_RELATION_RE.search(str(e)) or _SQLITE_MISSING_TABLE_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    if missing_table_name(exc):
        return True
    return any("undefinedtableerror" in str(e).lower() for e in _unwrap_exception_chain(exc))


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    return "\n".join(
        [
            f"Database schema is not initialized{table_hint}.",
            "Run: `alembic upgrade head`",
            "Or create it directly with: `agentstack init-db`",
        ]
    )
