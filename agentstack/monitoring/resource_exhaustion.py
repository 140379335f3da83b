"""Per-agent resource accounting with warning / intervention / termination phases.

Counters live in memory and are mirrored to the database in the background.
A failed write is logged and otherwise ignored; the in-memory state stays
authoritative for the running process.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .. import db as dbops
from ..background import BackgroundTasks
from ..config import ResourceExhaustionConfig
from ..db import Database
from ..events import EventEmitter, EventType
from ..models import AgentResourceMetric, ResourceExhaustionEvent, new_id, utcnow

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    INTERVENTION = "intervention"
    TERMINATION = "termination"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = (Phase.NORMAL, Phase.WARNING, Phase.INTERVENTION, Phase.TERMINATION)

_PHASE_ACTIONS = {
    Phase.NORMAL: "allowed",
    Phase.WARNING: "warned",
    Phase.INTERVENTION: "paused",
    Phase.TERMINATION: "terminated",
}

_PHASE_EVENTS = {
    Phase.WARNING: EventType.RESOURCE_WARNING,
    Phase.INTERVENTION: EventType.RESOURCE_INTERVENTION,
    Phase.TERMINATION: EventType.RESOURCE_TERMINATION,
}


class FileOperation(str, Enum):
    READ = "read"
    WRITE = "write"
    MODIFY = "modify"


class DeliverableType(str, Enum):
    CODE = "code"
    TEST = "test"
    DOCUMENTATION = "documentation"
    ANALYSIS = "analysis"
    REVIEW = "review"
    OTHER = "other"


@dataclass
class AgentResourceMetrics:
    agent_id: str
    agent_type: str = "unknown"
    files_read: int = 0
    files_written: int = 0
    files_modified: int = 0
    api_calls_count: int = 0
    subtasks_spawned: int = 0
    tokens_consumed: int = 0
    started_at: datetime = field(default_factory=utcnow)
    last_deliverable_at: datetime | None = None
    last_activity_at: datetime = field(default_factory=utcnow)
    phase: Phase = Phase.NORMAL
    paused_at: datetime | None = None
    pause_reason: str | None = None

    @property
    def files_accessed(self) -> int:
        return self.files_read + self.files_written + self.files_modified

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    def ms_without_deliverable(self, now: datetime | None = None) -> int:
        since = self.last_deliverable_at or self.started_at
        return int(((now or utcnow()) - since).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        for key in ("started_at", "last_deliverable_at", "last_activity_at", "paused_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_row(cls, row: AgentResourceMetric) -> AgentResourceMetrics:
        return cls(
            agent_id=row.agent_id,
            agent_type=row.agent_type or "unknown",
            files_read=row.files_read,
            files_written=row.files_written,
            files_modified=row.files_modified,
            api_calls_count=row.api_calls_count,
            subtasks_spawned=row.subtasks_spawned,
            tokens_consumed=row.tokens_consumed,
            started_at=row.started_at,
            last_deliverable_at=row.last_deliverable_at,
            last_activity_at=row.last_activity_at,
            phase=Phase(row.phase),
            paused_at=row.paused_at,
            pause_reason=row.pause_reason,
        )


class ResourceExhaustionService:
    def __init__(
        self,
        db: Database | None,
        config: ResourceExhaustionConfig | None = None,
        *,
        events: EventEmitter | None = None,
        background: BackgroundTasks | None = None,
    ) -> None:
        self.db = db
        self.config = config or ResourceExhaustionConfig()
        self.events = events
        self.background = background or BackgroundTasks()
        self._metrics: dict[str, AgentResourceMetrics] = {}
        self._waiters: dict[str, list[asyncio.Future[bool]]] = {}
        self._counters = {"warnings": 0, "interventions": 0, "terminations": 0}
        self._monitor: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    def is_enabled(self) -> bool:
        return self.config.enabled

    # ------------------------------------------------------------------
    # Persistence
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

    def _save(self, metrics: AgentResourceMetrics) -> None:
        fields = {
            "agent_id": metrics.agent_id,
            "agent_type": metrics.agent_type,
            "files_read": metrics.files_read,
            "files_written": metrics.files_written,
            "files_modified": metrics.files_modified,
            "api_calls_count": metrics.api_calls_count,
            "subtasks_spawned": metrics.subtasks_spawned,
            "tokens_consumed": metrics.tokens_consumed,
            "started_at": metrics.started_at,
            "last_deliverable_at": metrics.last_deliverable_at,
            "last_activity_at": metrics.last_activity_at,
            "phase": metrics.phase.value,
            "paused_at": metrics.paused_at,
            "pause_reason": metrics.pause_reason,
        }
        self._schedule_write(
            lambda s: dbops.upsert_resource_metric(s, **fields), f"save resource metrics {metrics.agent_id}"
        )

    async def flush(self) -> None:
        await self.background.drain()

    async def load_metrics_from_database(self) -> int:
        if self.db is None:
            return 0
        try:
            async with self.db.session() as session:
                rows = await dbops.list_resource_metrics(session)
        except Exception as exc:
            logger.warning("Failed to load resource metrics: %s", exc)
            return 0
        for row in rows:
            self._metrics.setdefault(row.agent_id, AgentResourceMetrics.from_row(row))
        logger.debug("Loaded %d resource metric row(s) from database", len(rows))
        return len(rows)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def initialize_agent(self, agent_id: str, agent_type: str) -> AgentResourceMetrics:
        metrics = AgentResourceMetrics(agent_id=agent_id, agent_type=agent_type)
        self._metrics[agent_id] = metrics
        self._save(metrics)
        logger.debug("Initialized resource tracking for %s (%s)", agent_id, agent_type)
        return metrics

    def _tracked(self, agent_id: str) -> AgentResourceMetrics | None:
        if not self.is_enabled():
            return None
        metrics = self._metrics.get(agent_id)
        if metrics is None:
            logger.debug("Agent %s is not tracked", agent_id)
        return metrics

    def record_file_operation(self, agent_id: str, op: FileOperation | str) -> None:
        metrics = self._tracked(agent_id)
        if metrics is None:
            return
        op = FileOperation(op)
        if op == FileOperation.READ:
            metrics.files_read += 1
        elif op == FileOperation.WRITE:
            metrics.files_written += 1
        else:
            metrics.files_modified += 1
        metrics.last_activity_at = utcnow()
        self._save(metrics)

    def record_api_call(self, agent_id: str, tokens: int | None = None) -> None:
        metrics = self._tracked(agent_id)
        if metrics is None:
            return
        metrics.api_calls_count += 1
        if tokens:
            metrics.tokens_consumed += tokens
        metrics.last_activity_at = utcnow()
        self._save(metrics)

    def record_subtask_spawn(self, agent_id: str) -> None:
        metrics = self._tracked(agent_id)
        if metrics is None:
            return
        metrics.subtasks_spawned += 1
        metrics.last_activity_at = utcnow()
        self._save(metrics)

    def record_deliverable(
        self,
        agent_id: str,
        deliverable_type: DeliverableType | str,
        description: str | None = None,
        task_id: str | None = None,
    ) -> str:
        """Record a deliverable and return the checkpoint id.

        A deliverable resets the no-deliverable clock and clears a warning.
        """
        deliverable_type = DeliverableType(deliverable_type)
        checkpoint_id = new_id()
        now = utcnow()
        self._schedule_write(
            lambda s: dbops.add_deliverable(
                s,
                id=checkpoint_id,
                agent_id=agent_id,
                task_id=task_id,
                deliverable_type=deliverable_type.value,
                description=description,
                created_at=now,
            ),
            f"record deliverable {checkpoint_id}",
        )
        metrics = self._metrics.get(agent_id)
        if metrics is not None:
            metrics.last_deliverable_at = now
            metrics.last_activity_at = now
            if metrics.phase == Phase.WARNING:
                metrics.phase = Phase.NORMAL
            self._save(metrics)
        logger.info("Recorded %s deliverable for %s", deliverable_type.value, agent_id)
        return checkpoint_id

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _usage(self, metrics: AgentResourceMetrics) -> list[tuple[str, int, int]]:
        t = self.config.thresholds
        return [
            ("max_files_accessed", metrics.files_accessed, t.max_files_accessed),
            ("max_api_calls", metrics.api_calls_count, t.max_api_calls),
            ("max_subtasks_spawned", metrics.subtasks_spawned, t.max_subtasks_spawned),
            ("max_tokens_consumed", metrics.tokens_consumed, t.max_tokens_consumed),
            ("max_time_without_deliverable_ms", metrics.ms_without_deliverable(), t.max_time_without_deliverable_ms),
        ]

    def evaluate_agent(self, agent_id: str) -> Phase:
        """Escalate the agent's phase if any counter crossed a limit.

        Evaluation never lowers a phase; that only happens through
        ``resume_agent`` and ``record_deliverable``.
        """
        if not self.is_enabled():
            return Phase.NORMAL
        metrics = self._metrics.get(agent_id)
        if metrics is None:
            return Phase.NORMAL

        candidate, triggered_by = Phase.NORMAL, None
        for key, value, limit in self._usage(metrics):
            ratio = value / limit
            if ratio >= 1:
                phase = Phase.INTERVENTION
            elif ratio >= self.config.warning_threshold_percent:
                phase = Phase.WARNING
            else:
                continue
            if phase.rank > candidate.rank:
                candidate, triggered_by = phase, key

        if candidate.rank > metrics.phase.rank:
            previous = metrics.phase
            metrics.phase = candidate
            self._save(metrics)
            self._handle_phase_change(metrics, previous, triggered_by)
        return metrics.phase

    def check_all_agents(self) -> None:
        if not self.is_enabled():
            return
        for agent_id in list(self._metrics):
            self.evaluate_agent(agent_id)

    def _handle_phase_change(self, metrics: AgentResourceMetrics, previous: Phase, triggered_by: str) -> None:
        phase = metrics.phase
        if phase == Phase.WARNING:
            self._counters["warnings"] += 1
            logger.warning(
                "Agent %s (%s) approaching resource limits: %s", metrics.agent_id, metrics.agent_type, triggered_by
            )
        elif phase == Phase.INTERVENTION:
            self._counters["interventions"] += 1
            logger.error(
                "Agent %s (%s) exceeded resource limits: %s", metrics.agent_id, metrics.agent_type, triggered_by
            )
        elif phase == Phase.TERMINATION:
            self._counters["terminations"] += 1
            logger.error("Agent %s (%s) terminated: %s", metrics.agent_id, metrics.agent_type, triggered_by)

        snapshot = metrics.to_dict()
        thresholds = self.config.thresholds.model_dump()
        self._schedule_write(
            lambda s: dbops.add_resource_event(
                s,
                agent_id=metrics.agent_id,
                agent_type=metrics.agent_type,
                phase=phase.value,
                action_taken=_PHASE_ACTIONS[phase],
                metrics=snapshot,
                thresholds=thresholds,
                triggered_by=triggered_by,
                created_at=utcnow(),
            ),
            f"log resource event {metrics.agent_id}",
        )
        if self.events:
            self.events.publish(
                _PHASE_EVENTS[phase],
                {"agent_id": metrics.agent_id, "from": previous.value, "to": phase.value, "triggered_by": triggered_by},
            )

        if phase == Phase.INTERVENTION and self.config.pause_on_intervention:
            self.pause_agent(metrics.agent_id, f"Resource threshold exceeded: {triggered_by}")

    # ------------------------------------------------------------------
    # Pause / resume / terminate
    # ------------------------------------------------------------------

    def _resolve_waiters(self, agent_id: str, value: bool) -> None:
        for waiter in self._waiters.pop(agent_id, []):
            if not waiter.done():
                waiter.set_result(value)

    def pause_agent(self, agent_id: str, reason: str) -> bool:
        metrics = self._metrics.get(agent_id)
        if metrics is None:
            return False
        metrics.paused_at = utcnow()
        metrics.pause_reason = reason
        self._save(metrics)
        self._resolve_waiters(agent_id, False)
        if self.events:
            self.events.publish(EventType.RESOURCE_PAUSED, {"agent_id": agent_id, "reason": reason})
        logger.info("Agent %s paused: %s", agent_id, reason)
        return True

    def resume_agent(self, agent_id: str) -> bool:
        metrics = self._metrics.get(agent_id)
        if metrics is None or not metrics.is_paused:
            return False
        metrics.paused_at = None
        metrics.pause_reason = None
        if metrics.phase == Phase.INTERVENTION:
            metrics.phase = Phase.WARNING
        self._save(metrics)
        self._resolve_waiters(agent_id, True)
        if self.events:
            self.events.publish(EventType.RESOURCE_RESUMED, {"agent_id": agent_id})
        logger.info("Agent %s resumed", agent_id)
        return True

    def is_agent_paused(self, agent_id: str) -> bool:
        metrics = self._metrics.get(agent_id)
        return metrics is not None and metrics.is_paused

    def wait_for_resume(self, agent_id: str) -> asyncio.Future[bool]:
        """Future resolving True on resume, False on a further pause or termination."""
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(agent_id, []).append(waiter)
        return waiter

    def terminate_agent(self, agent_id: str, reason: str) -> bool:
        metrics = self._metrics.get(agent_id)
        if metrics is None:
            return False
        previous = metrics.phase
        metrics.phase = Phase.TERMINATION
        self._save(metrics)
        self._handle_phase_change(metrics, previous, "manual")
        self._resolve_waiters(agent_id, False)
        logger.info("Agent %s terminated: %s", agent_id, reason)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_agent_metrics(self, agent_id: str) -> AgentResourceMetrics | None:
        return self._metrics.get(agent_id)

    def paused_agent_count(self) -> int:
        return sum(1 for m in self._metrics.values() if m.is_paused)

    async def get_resource_metrics(self, since: datetime | None = None) -> dict[str, Any]:
        by_phase = {phase.value: 0 for phase in Phase}
        for metrics in self._metrics.values():
            by_phase[metrics.phase.value] += 1

        # Without a readable store, fall back to this process's counters
        totals = dict(self._counters)
        recent: Sequence[ResourceExhaustionEvent] = []
        if self.db is not None:
            try:
                async with self.db.session() as session:
                    counts = await dbops.get_resource_event_counts(session, since)
                    recent = await dbops.list_resource_events(session, limit=10, since=since)
                totals = {
                    "warnings": counts.get(Phase.WARNING.value, 0),
                    "interventions": counts.get(Phase.INTERVENTION.value, 0),
                    "terminations": counts.get(Phase.TERMINATION.value, 0),
                }
            except Exception as exc:
                logger.warning("Failed to read resource events: %s", exc)

        return {
            "total_agents_tracked": len(self._metrics),
            "agents_by_phase": by_phase,
            "paused_agents": self.paused_agent_count(),
            "total_warnings": totals["warnings"],
            "total_interventions": totals["interventions"],
            "total_terminations": totals["terminations"],
            "recent_events": list(recent),
        }

    async def get_recent_events(self, limit: int = 10, agent_id: str | None = None) -> Sequence[ResourceExhaustionEvent]:
        if self.db is None:
            return []
        async with self.db.session() as session:
            return await dbops.list_resource_events(session, agent_id=agent_id, limit=limit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cleanup_agent(self, agent_id: str) -> None:
        self._metrics.pop(agent_id, None)
        self._resolve_waiters(agent_id, False)

        async def _delete(session) -> None:
            await dbops.delete_resource_metric(session, agent_id)
            await dbops.delete_deliverables(session, agent_id)

        self._schedule_write(_delete, f"clean up resource metrics {agent_id}")
        logger.debug("Cleaned up resource tracking for %s", agent_id)

    async def _monitor_forever(self) -> None:
        interval = self.config.check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                self.check_all_agents()
            except Exception as exc:
                logger.warning("Resource check failed: %s", exc)

    async def start(self) -> None:
        if not self.is_enabled() or self._monitor is not None:
            return
        await self.load_metrics_from_database()
        self._monitor = asyncio.get_running_loop().create_task(self._monitor_forever(), name="resource-monitor")
        logger.info("Resource exhaustion monitoring started (every %dms)", self.config.check_interval_ms)

    async def stop(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._monitor
        self._monitor = None
        logger.info("Resource exhaustion monitoring stopped")

    async def reconfigure(self, config: ResourceExhaustionConfig) -> bool:
        if config == self.config:
            return False
        running = self._monitor is not None
        await self.stop()
        self.config = config
        if running or config.enabled:
            await self.start()
        return True

    def reset(self) -> None:
        for agent_id in list(self._waiters):
            self._resolve_waiters(agent_id, False)
        self._metrics.clear()
        self._counters = dict.fromkeys(self._counters, 0)
