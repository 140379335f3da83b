"""Semantic drift detection between a new task and its ancestors."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import db as dbops
from ..background import BackgroundTasks
from ..config import DriftBehavior, DriftDetectionConfig
from ..db import Database
from ..embeddings import EmbeddingProvider, cosine_similarity
from ..events import EventEmitter, EventType
from ..models import DriftDetectionEvent, TaskEmbedding, TaskRelationship, utcnow

logger = logging.getLogger(__name__)

ANCESTOR_EDGE_TYPES = ("parent_of", "derived_from")


class DriftAction(str, Enum):
    ALLOWED = "allowed"
    WARNED = "warned"
    PREVENTED = "prevented"


class RelationshipType(str, Enum):
    PARENT_OF = "parent_of"
    DERIVED_FROM = "derived_from"
    DEPENDS_ON = "depends_on"
    SUPERSEDES = "supersedes"


@dataclass
class DriftCheckResult:
    is_drift: bool = False
    max_similarity: float = 0.0
    action: DriftAction = DriftAction.ALLOWED
    checked_ancestors: int = 0
    most_similar_task_id: str | None = None
    most_similar_task_input: str | None = None


@dataclass(frozen=True)
class Ancestor:
    task_id: str
    depth: int


class DriftDetectionService:
    def __init__(
        self,
        db: Database,
        embedding_provider: EmbeddingProvider | None,
        config: DriftDetectionConfig | None = None,
        *,
        events: EventEmitter | None = None,
        background: BackgroundTasks | None = None,
    ) -> None:
        self.db = db
        self.embedding_provider = embedding_provider
        self.config = config or DriftDetectionConfig()
        self.events = events
        self.background = background or BackgroundTasks()

    def is_enabled(self) -> bool:
        return self.config.enabled and self.embedding_provider is not None

    def reconfigure(self, config: DriftDetectionConfig) -> bool:
        if config == self.config:
            return False
        self.config = config
        return True

    async def check_drift(
        self, task_input: str, task_type: str, parent_task_id: str | None = None
    ) -> DriftCheckResult:
        if not self.is_enabled() or not parent_task_id:
            return DriftCheckResult()

        try:
            async with self.db.session() as session:
                ancestors = [Ancestor(parent_task_id, 1)]
                if self.config.ancestor_depth > 1:
                    ancestors += [
                        Ancestor(a.task_id, a.depth + 1)
                        for a in await self._ancestors(session, parent_task_id, self.config.ancestor_depth - 1)
                        if a.task_id != parent_task_id
                    ]
                stored = {
                    row.task_id: row.embedding
                    for row in await dbops.get_task_embeddings(session, [a.task_id for a in ancestors])
                }
            if not stored:
                return DriftCheckResult(checked_ancestors=len(ancestors))

            embedding = await self.embedding_provider.embed(task_input)
            best_score = 0.0
            best_id: str | None = None
            for ancestor in ancestors:
                vector = stored.get(ancestor.task_id)
                if vector is None:
                    continue
                score = cosine_similarity(embedding, vector)
                if score > best_score:
                    best_score, best_id = score, ancestor.task_id

            result = DriftCheckResult(
                max_similarity=best_score, checked_ancestors=len(ancestors), most_similar_task_id=best_id
            )
            if best_score >= self.config.threshold:
                result.is_drift = True
                result.action = (
                    DriftAction.PREVENTED if self.config.behavior == DriftBehavior.PREVENT else DriftAction.WARNED
                )
            elif self.config.warning_threshold is not None and best_score >= self.config.warning_threshold:
                result.action = DriftAction.WARNED

            if best_id is not None:
                async with self.db.session() as session:
                    task = await dbops.get_task(session, best_id)
                    result.most_similar_task_input = task.input if task else None

            if result.is_drift and best_id is not None:
                await self.log_drift_event(
                    task_type=task_type,
                    ancestor_task_id=best_id,
                    similarity_score=best_score,
                    threshold=self.config.threshold,
                    action_taken=result.action,
                    task_input=task_input,
                )
                if self.events:
                    self.events.publish(
                        EventType.DRIFT_DETECTED,
                        {
                            "task_type": task_type,
                            "ancestor_task_id": best_id,
                            "similarity": best_score,
                            "action": result.action.value,
                        },
                    )
            logger.debug(
                "Drift check: similarity=%.3f drift=%s action=%s ancestors=%d",
                best_score,
                result.is_drift,
                result.action.value,
                len(ancestors),
            )
            return result
        except Exception as exc:
            logger.error("Error during drift check, allowing task: %s", exc)
            return DriftCheckResult()

    async def index_task(self, task_id: str, task_input: str) -> None:
        """Embed and store ``task_input``; in async mode this returns immediately."""
        if not self.is_enabled() or not task_input:
            return

        async def _index() -> None:
            embedding = await self.embedding_provider.embed(task_input)
            await self.store_task_embedding(task_id, embedding)
            logger.debug("Task %s indexed for drift detection", task_id)

        if self.config.async_embedding:
            self.background.spawn(_index(), name=f"index-task-{task_id}")
            return
        try:
            await _index()
        except Exception as exc:
            logger.error("Failed to index task %s: %s", task_id, exc)

    async def store_task_embedding(self, task_id: str, embedding: list[float]) -> TaskEmbedding:
        model = getattr(self.embedding_provider, "model", "unknown")
        async with self.db.session() as session:
            return await dbops.upsert_task_embedding(session, task_id, list(embedding), model)

    async def get_task_embedding(self, task_id: str) -> TaskEmbedding | None:
        async with self.db.session() as session:
            return await dbops.get_task_embedding(session, task_id)

    async def create_task_relationship(
        self,
        from_task_id: str,
        to_task_id: str,
        relationship_type: RelationshipType | str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        relationship_type = RelationshipType(relationship_type).value
        async with self.db.session() as session:
            existing = await dbops.find_task_relationship(session, from_task_id, to_task_id, relationship_type)
            if existing is not None:
                logger.debug("Task relationship already exists: %s", existing.id)
                return existing.id
        try:
            async with self.db.session() as session:
                row = await dbops.add_task_relationship(
                    session,
                    from_task_id=from_task_id,
                    to_task_id=to_task_id,
                    relationship_type=relationship_type,
                    metadata_=metadata,
                    created_at=utcnow(),
                )
                return row.id
        except IntegrityError:
            # Lost a race with a concurrent insert of the same edge
            async with self.db.session() as session:
                existing = await dbops.find_task_relationship(session, from_task_id, to_task_id, relationship_type)
            if existing is None:
                raise
            return existing.id

    async def get_task_ancestors(self, task_id: str, max_depth: int = 3) -> list[Ancestor]:
        async with self.db.session() as session:
            return await self._ancestors(session, task_id, max_depth)

    async def _ancestors(self, session: AsyncSession, task_id: str, max_depth: int) -> list[Ancestor]:
        ancestors: list[Ancestor] = []
        visited: set[str] = set()
        queue: deque[Ancestor] = deque([Ancestor(task_id, 0)])
        while queue:
            current = queue.popleft()
            if current.depth >= max_depth or current.task_id in visited:
                continue
            visited.add(current.task_id)
            for edge in await dbops.get_task_relationships(session, current.task_id, "incoming"):
                if edge.relationship_type not in ANCESTOR_EDGE_TYPES or edge.from_task_id in visited:
                    continue
                found = Ancestor(edge.from_task_id, current.depth + 1)
                ancestors.append(found)
                queue.append(found)
        return ancestors

    async def get_task_relationships(self, task_id: str, direction: str = "both") -> Sequence[TaskRelationship]:
        async with self.db.session() as session:
            return await dbops.get_task_relationships(session, task_id, direction)

    async def log_drift_event(
        self,
        *,
        task_type: str,
        ancestor_task_id: str,
        similarity_score: float,
        threshold: float,
        action_taken: DriftAction,
        task_input: str | None = None,
        task_id: str | None = None,
    ) -> DriftDetectionEvent:
        async with self.db.session() as session:
            event = await dbops.add_drift_event(
                session,
                task_id=task_id,
                task_type=task_type,
                ancestor_task_id=ancestor_task_id,
                similarity_score=similarity_score,
                threshold=threshold,
                action_taken=DriftAction(action_taken).value,
                task_input=task_input,
                created_at=utcnow(),
            )
        logger.debug("Drift event %s logged (%s)", event.id, event.action_taken)
        return event

    async def get_drift_detection_metrics(self, since: datetime | None = None) -> dict[str, Any]:
        async with self.db.session() as session:
            by_action = await dbops.get_drift_action_counts(session, since)
        total = sum(v["count"] for v in by_action.values())
        weighted = sum(v["count"] * v["avg_similarity"] for v in by_action.values())
        return {
            "total_events": total,
            "allowed_count": by_action.get("allowed", {}).get("count", 0),
            "warned_count": by_action.get("warned", {}).get("count", 0),
            "prevented_count": by_action.get("prevented", {}).get("count", 0),
            "average_similarity": weighted / total if total else 0.0,
        }

    async def get_recent_drift_events(self, limit: int = 50) -> Sequence[DriftDetectionEvent]:
        async with self.db.session() as session:
            return await dbops.list_drift_events(session, limit)
