"""Spawning, tracking and executing ephemeral agents."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .. import db as dbops
from ..background import BackgroundTasks
from ..db import Database
from ..errors import (
    AgentNotFound,
    AgentPausedError,
    CapacityExceeded,
    DuplicateAgentName,
    ProviderError,
    ProviderUnavailableError,
    UnknownAgentType,
)
from ..events import EventEmitter, EventType
from ..providers import ChatMessage, ChatOptions, ProviderRegistry, is_provider_available
from .registry import AgentRegistry
from .semaphore import AgentPool, Semaphore

if TYPE_CHECKING:
    from ..monitoring.resource_exhaustion import ResourceExhaustionService

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class SpawnedAgent:
    id: str
    type: str
    name: str
    status: AgentStatus = AgentStatus.IDLE
    session_id: str | None = None
    identity_id: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "status": self.status.value,
            "session_id": self.session_id,
            "identity_id": self.identity_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ExecuteResult:
    agent_id: str
    response: str
    model: str
    duration_ms: int


class Spawner:
    """Owns the live-agent table, the LLM semaphore and the instance pool."""

    def __init__(
        self,
        registry: AgentRegistry,
        providers: ProviderRegistry,
        *,
        db: Database | None = None,
        events: EventEmitter | None = None,
        background: BackgroundTasks | None = None,
        resources: ResourceExhaustionService | None = None,
        max_agents: int = 20,
        llm_concurrency: int = 20,
        pool_size: int = 10,
    ) -> None:
        self.registry = registry
        self.providers = providers
        self.db = db
        self.events = events
        self.background = background or BackgroundTasks()
        self.resources = resources
        self.max_agents = max_agents
        self.semaphore = Semaphore("agents", llm_concurrency)
        self.pool = AgentPool(pool_size)
        self._agents: dict[str, SpawnedAgent] = {}
        self._by_name: dict[str, str] = {}
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence (fire-and-forget, serialized in submission order)
    # ------------------------------------------------------------------

    def _schedule_write(self, coro_factory, description: str) -> None:
        if self.db is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping %s", description)
            return

        async def _run() -> None:
            async with self._write_lock:
                try:
                    async with self.db.session() as session:
                        await coro_factory(session)
                except Exception as exc:
                    logger.warning("Failed to %s: %s", description, exc)

        self.background.spawn(_run(), name=description)

    def _persist(self, agent: SpawnedAgent) -> None:
        fields = {
            "id": agent.id,
            "type": agent.type,
            "name": agent.name,
            "status": agent.status.value,
            "session_id": agent.session_id,
            "identity_id": agent.identity_id,
            "metadata_": agent.metadata,
            "created_at": agent.created_at,
        }
        self._schedule_write(lambda s: dbops.upsert_active_agent(s, **fields), f"persist agent {agent.id}")

    async def flush(self) -> None:
        """Wait for queued persistence writes."""
        await self.background.drain()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def spawn(
        self,
        agent_type: str,
        *,
        name: str | None = None,
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        identity_id: str | None = None,
    ) -> SpawnedAgent:
        if not self.registry.has(agent_type):
            raise UnknownAgentType(agent_type)
        if len(self._agents) >= self.max_agents:
            raise CapacityExceeded(self.max_agents)

        agent_id = str(uuid4())
        name = name or f"{agent_type}-{agent_id[:8]}"
        if name in self._by_name:
            raise DuplicateAgentName(name)

        agent = SpawnedAgent(
            id=agent_id,
            type=agent_type,
            name=name,
            session_id=session_id,
            identity_id=identity_id,
            metadata=metadata,
        )
        self._agents[agent_id] = agent
        self._by_name[name] = agent_id
        self._persist(agent)
        if self.resources:
            self.resources.initialize_agent(agent_id, agent_type)
        if self.events:
            self.events.publish(EventType.AGENT_SPAWNED, agent.to_dict())
        logger.info("Spawned agent %s (%s, %s)", name, agent_type, agent_id)
        return agent

    def get(self, agent_id: str) -> SpawnedAgent | None:
        return self._agents.get(agent_id)

    def get_by_name(self, name: str) -> SpawnedAgent | None:
        agent_id = self._by_name.get(name)
        return self._agents.get(agent_id) if agent_id else None

    def list(self, session_id: str | None = None) -> list[SpawnedAgent]:
        return [a for a in self._agents.values() if session_id is None or a.session_id == session_id]

    def update_status(self, agent_id: str, status: AgentStatus) -> bool:
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        agent.status = AgentStatus(status)
        self._persist(agent)
        logger.debug("Agent %s status -> %s", agent_id, agent.status.value)
        return True

    def stop(self, agent_id: str) -> bool:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return False
        agent.status = AgentStatus.STOPPED
        self._by_name.pop(agent.name, None)
        self.pool.remove(agent.type, agent_id)
        self._schedule_write(lambda s: dbops.delete_active_agent(s, agent_id), f"delete agent {agent_id}")
        if self.resources:
            self.resources.cleanup_agent(agent_id)
        if self.events:
            self.events.publish(EventType.AGENT_STOPPED, {"id": agent_id, "name": agent.name})
        logger.info("Stopped agent %s (%s)", agent.name, agent_id)
        return True

    def stop_by_name(self, name: str) -> bool:
        agent_id = self._by_name.get(name)
        return self.stop(agent_id) if agent_id else False

    def stop_all(self, session_id: str | None = None) -> int:
        targets = [a.id for a in self.list(session_id)]
        for agent_id in targets:
            self.stop(agent_id)
        logger.info("Stopped %d agent(s)", len(targets))
        return len(targets)

    def count(self, session_id: str | None = None) -> int:
        if session_id is None:
            return len(self._agents)
        return len(self.list(session_id))

    def get_agents_by_status(self, status: AgentStatus) -> list[SpawnedAgent]:
        return [a for a in self._agents.values() if a.status == status]

    def clear(self) -> None:
        self._agents.clear()
        self._by_name.clear()
        self.pool.clear()
        self.semaphore.reset()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_agent(
        self,
        agent_id: str,
        task: str,
        *,
        provider: str | None = None,
        model: str | None = None,
        context: str | None = None,
    ) -> ExecuteResult:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        definition = self.registry.get(agent.type)
        if definition is None:
            raise UnknownAgentType(agent.type)

        provider_name = provider or self.providers.settings.default_provider
        chat_provider = self.providers.get(provider_name)
        if chat_provider is None:
            raise ProviderError(f"Provider '{provider_name}' is not configured", provider=provider_name)
        if not is_provider_available(chat_provider):
            raise ProviderUnavailableError(provider_name)
        if self.resources and self.resources.is_agent_paused(agent_id):
            metrics = self.resources.get_agent_metrics(agent_id)
            raise AgentPausedError(agent_id, metrics.pause_reason if metrics else None)

        messages = [ChatMessage("system", definition.system_prompt)]
        if context:
            messages.append(ChatMessage("user", f"Context:\n{context}"))
            messages.append(ChatMessage("assistant", "I understand the context. What would you like me to do?"))
        messages.append(ChatMessage("user", task))

        self.update_status(agent_id, AgentStatus.RUNNING)
        started = time.monotonic()
        try:
            logger.info("Executing agent %s (%s) via %s", agent_id, agent.type, provider_name)
            async with self.semaphore.hold():
                response = await chat_provider.chat(messages, ChatOptions(model=model))
        except Exception as exc:
            self.update_status(agent_id, AgentStatus.FAILED)
            logger.error("Agent %s task failed: %s", agent_id, exc)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        self.update_status(agent_id, AgentStatus.IDLE)
        if self.resources:
            self.resources.record_api_call(agent_id, sum(response.usage.values()) or None)
            self.resources.evaluate_agent(agent_id)
        logger.info("Agent %s completed in %dms (%s)", agent_id, duration_ms, response.model)
        return ExecuteResult(agent_id=agent_id, response=response.content, model=response.model, duration_ms=duration_ms)

    async def run_agent(
        self,
        agent_type: str,
        task: str,
        *,
        session_id: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        context: str | None = None,
    ) -> ExecuteResult:
        """Execute on a pooled instance of ``agent_type``, spawning one if none is free."""
        agent_id = self.pool.acquire(agent_type)
        if agent_id is None or agent_id not in self._agents:
            agent_id = self.spawn(agent_type, session_id=session_id).id
        try:
            return await self.execute_agent(agent_id, task, provider=provider, model=model, context=context)
        finally:
            if agent_id in self._agents:
                self.pool.release(agent_type, agent_id)

    # ------------------------------------------------------------------
    # Restore / stats
    # ------------------------------------------------------------------

    async def restore_agents(self) -> int:
        if self.db is None:
            return 0
        async with self.db.session() as session:
            rows = await dbops.list_active_agents(session)
        restored = 0
        for row in rows:
            if row.id in self._agents:
                continue
            agent = SpawnedAgent(
                id=row.id,
                type=row.type,
                name=row.name,
                status=AgentStatus(row.status),
                session_id=row.session_id,
                identity_id=row.identity_id,
                metadata=row.metadata_,
                created_at=row.created_at,
            )
            self._agents[agent.id] = agent
            self._by_name[agent.name] = agent.id
            restored += 1
        logger.info("Restored %d agent(s) from database", restored)
        return restored

    def get_concurrency_stats(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for agent in self._agents.values():
            by_type[agent.type] = by_type.get(agent.type, 0) + 1
        return {
            "agents": {"active": len(self._agents), "max_concurrent": self.max_agents, "by_type": by_type},
            "semaphore": self.semaphore.state(),
            "pool": self.pool.stats(),
        }
