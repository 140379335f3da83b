"""Wires every orchestration component from one ``Settings`` instance."""

from __future__ import annotations

import logging
from typing import Any

from .agents.identity import IdentityService, IdentityStatus
from .agents.registry import AgentRegistry
from .agents.spawner import SpawnedAgent, Spawner
from .background import BackgroundTasks
from .config import (
    ConsensusConfig,
    DriftDetectionConfig,
    ResourceExhaustionConfig,
    Settings,
    SmartDispatcherConfig,
)
from .coordination.bus import MessageBus
from .coordination.review_loop import ReviewLoopManager
from .coordination.topology import HierarchicalCoordinator
from .db import Database
from .embeddings import EmbeddingProvider, create_embedding_provider
from .errors import IdentityNotFound, RetiredIdentityError
from .events import EventEmitter, RedisEventPublisher
from .monitoring.resource_exhaustion import ResourceExhaustionService
from .providers import ChatProvider, ProviderRegistry
from .tasks.consensus import ConsensusService
from .tasks.dispatcher import SmartDispatcher
from .tasks.drift import DriftDetectionService
from .tasks.service import TaskService

logger = logging.getLogger(__name__)

_DEFAULT = object()


class AgentStack:
    """Explicitly constructed runtime; nothing here is a module-level singleton.

    ``embedding_provider`` and ``dispatch_provider`` default to what the
    settings describe; pass ``None`` to disable them outright.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: Database | None = None,
        providers: ProviderRegistry | None = None,
        embedding_provider: Any = _DEFAULT,
        dispatch_provider: Any = _DEFAULT,
    ) -> None:
        self.settings = settings or Settings()
        s = self.settings

        self.background = BackgroundTasks()
        self.events = EventEmitter(self.background)
        if s.redis_events_enabled:
            self.events.on_event(RedisEventPublisher(s.redis_url))

        self.db = db or Database(s.database_url)
        self.providers = providers or ProviderRegistry(s)
        self.registry = AgentRegistry()
        self.bus = MessageBus()

        self.resources = ResourceExhaustionService(
            self.db, s.resource_exhaustion, events=self.events, background=self.background
        )
        self.spawner = Spawner(
            self.registry,
            self.providers,
            db=self.db,
            events=self.events,
            background=self.background,
            resources=self.resources,
            max_agents=s.max_live_agents,
            llm_concurrency=s.llm_concurrency,
            pool_size=s.pool_size_per_type,
        )
        self.identities = IdentityService(self.db, self.events)
        self.consensus = ConsensusService(self.db, s.consensus, self.events)

        self.embedding_provider: EmbeddingProvider | None = (
            create_embedding_provider(s) if embedding_provider is _DEFAULT else embedding_provider
        )
        self.drift = DriftDetectionService(
            self.db, self.embedding_provider, s.drift_detection, events=self.events, background=self.background
        )

        dispatch_model = None
        if dispatch_provider is _DEFAULT:
            dispatch_provider, dispatch_model = self._dispatch_provider()
        self.dispatcher = SmartDispatcher(dispatch_provider, s.smart_dispatcher, model=dispatch_model)

        self.tasks = TaskService(
            self.db,
            self.registry,
            consensus=self.consensus,
            drift=self.drift,
            dispatcher=self.dispatcher,
            events=self.events,
        )
        self.review_loops = ReviewLoopManager(
            self.spawner,
            events=self.events,
            max_concurrent=s.max_concurrent_review_loops,
            default_max_iterations=s.review_max_iterations,
        )
        self._started = False

    def _dispatch_provider(self) -> tuple[ChatProvider | None, str | None]:
        """Prefer Anthropic with the dedicated dispatch model, else the default provider."""
        if self.settings.anthropic_api_key:
            return self.providers.get("anthropic"), self.settings.smart_dispatcher.dispatch_model
        provider = self.providers.get_default()
        if provider is None:
            logger.warning("No provider configured for the smart dispatcher")
        return provider, None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, init_schema: bool = False) -> None:
        if self._started:
            return
        if init_schema:
            await self.db.init_db()
        await self.spawner.restore_agents()
        await self.resources.start()
        self.consensus.start()
        self._started = True
        logger.info("Agent stack started")

    async def stop(self) -> None:
        await self.consensus.stop()
        await self.resources.stop()
        self.review_loops.clear()
        await self.background.drain()
        if self.settings.redis_events_enabled:
            from .redis_client import close_pools

            await close_pools()
        await self.db.dispose()
        self._started = False
        logger.info("Agent stack stopped")

    def reset(self) -> None:
        """Drop all in-memory state; persisted rows are untouched."""
        self.review_loops.clear()
        self.spawner.clear()
        self.registry.clear_custom()
        self.bus.clear()
        self.dispatcher.clear_cache()
        self.resources.reset()
        logger.info("Agent stack state reset")

    async def flush(self) -> None:
        """Wait for background persistence and event delivery."""
        await self.background.drain()

    # ------------------------------------------------------------------
    # Reconfiguration
    # ------------------------------------------------------------------

    async def reconfigure_consensus(self, config: ConsensusConfig) -> bool:
        return await self.consensus.reconfigure(config)

    def reconfigure_drift_detection(self, config: DriftDetectionConfig) -> bool:
        return self.drift.reconfigure(config)

    async def reconfigure_resource_exhaustion(self, config: ResourceExhaustionConfig) -> bool:
        return await self.resources.reconfigure(config)

    def reconfigure_smart_dispatcher(self, config: SmartDispatcherConfig) -> bool:
        return self.dispatcher.reconfigure(config)

    # ------------------------------------------------------------------
    # Cross-component operations
    # ------------------------------------------------------------------

    async def spawn_for_identity(
        self,
        identity_id: str,
        *,
        name: str | None = None,
        session_id: str | None = None,
        actor_id: str | None = None,
    ) -> SpawnedAgent:
        identity = await self.identities.get_identity(identity_id)
        if identity is None:
            raise IdentityNotFound(identity_id)
        if identity.status == IdentityStatus.RETIRED.value:
            raise RetiredIdentityError("Cannot spawn a retired identity", agent_id=identity_id)

        agent = self.spawner.spawn(
            identity.agent_type,
            name=name,
            session_id=session_id,
            identity_id=identity_id,
            metadata={"display_name": identity.display_name} if identity.display_name else None,
        )
        try:
            await self.identities.record_spawn(identity_id, agent.id, actor_id=actor_id)
        except Exception:
            self.spawner.stop(agent.id)
            raise
        return agent

    def create_coordinator(self, session_id: str | None = None) -> HierarchicalCoordinator:
        return HierarchicalCoordinator(
            self.spawner,
            self.bus,
            max_workers=self.settings.coordinator_max_workers,
            session_id=session_id,
        )
