"""
Notification sink for orchestration events.

Publication is fire-and-forget: a failing handler is logged and never
affects the state change that produced the event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .background import BackgroundTasks

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    AGENT_SPAWNED = "agent:spawned"
    AGENT_STOPPED = "agent:stopped"
    AGENT_STATUS = "agent:status"

    TASK_CREATED = "task:created"
    TASK_COMPLETED = "task:completed"
    TASK_FAILED = "task:failed"

    IDENTITY_CREATED = "identity:created"
    IDENTITY_UPDATED = "identity:updated"
    IDENTITY_STATUS_CHANGED = "identity:status_changed"
    IDENTITY_RETIRED = "identity:retired"

    CONSENSUS_CHECKPOINT_CREATED = "consensus:checkpoint:created"
    CONSENSUS_CHECKPOINT_APPROVED = "consensus:checkpoint:approved"
    CONSENSUS_CHECKPOINT_REJECTED = "consensus:checkpoint:rejected"
    CONSENSUS_CHECKPOINT_EXPIRED = "consensus:checkpoint:expired"

    DRIFT_DETECTED = "drift:detected"

    RESOURCE_WARNING = "resource:warning"
    RESOURCE_INTERVENTION = "resource:intervention"
    RESOURCE_TERMINATION = "resource:termination"
    RESOURCE_PAUSED = "resource:paused"
    RESOURCE_RESUMED = "resource:resumed"

    REVIEW_LOOP_STARTED = "review_loop:started"
    REVIEW_LOOP_ITERATION = "review_loop:iteration"
    REVIEW_LOOP_COMPLETED = "review_loop:completed"
    REVIEW_LOOP_FAILED = "review_loop:failed"
    REVIEW_LOOP_ABORTED = "review_loop:aborted"


@dataclass
class AgentEvent:
    """Standardized event envelope."""

    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self, background: BackgroundTasks | None = None) -> None:
        self._handlers: list[Callable[[AgentEvent], Any]] = []
        self.background = background or BackgroundTasks()

    def on_event(self, handler: Callable[[AgentEvent], Any]) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: Callable[[AgentEvent], Any]) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: AgentEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("Event handler error for %s: %s", event.type.value, exc)

    def publish(self, event_type: EventType, payload: dict[str, Any] | None = None) -> AgentEvent:
        """Schedule delivery without waiting for it."""
        event = AgentEvent(type=event_type, payload=payload or {})
        if not self._handlers:
            return event
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; dropping event %s", event_type.value)
            return event
        self.background.spawn(self.emit(event), name=f"event:{event_type.value}")
        return event


class RedisEventPublisher:
    """Handler that publishes events to Redis Pub/Sub."""

    def __init__(self, redis_url: str | None = None) -> None:
        self.redis_url = redis_url

    async def __call__(self, event: AgentEvent) -> None:
        from .redis_client import get_redis_client

        redis = get_redis_client(self.redis_url)
        await redis.publish(f"channel:events:{event.type.value}", json.dumps(event.to_dict(), default=str))


class EventRecorder:
    """Keeps emitted events in memory; handy for inspection and tests."""

    def __init__(self, limit: int = 1000) -> None:
        self.limit = limit
        self.events: list[AgentEvent] = []

    def __call__(self, event: AgentEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.limit:
            del self.events[: len(self.events) - self.limit]

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [e for e in self.events if e.type == event_type]
