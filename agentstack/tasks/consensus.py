"""Consensus checkpoints: an approval gate in front of risky subtask spawning."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .. import db as dbops
from ..config import ConsensusConfig, ReviewerStrategy, RiskLevel
from ..db import Database
from ..errors import CheckpointExpired, CheckpointNotFound, CheckpointNotPending
from ..events import EventEmitter, EventType
from ..models import ConsensusCheckpoint, ConsensusCheckpointEvent, new_id, utcnow

logger = logging.getLogger(__name__)

EXPIRATION_SWEEP_SECONDS = 60
MAX_DEPTH_WALK = 100


class CheckpointStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass
class ProposedSubtask:
    agent_type: str
    input: str
    estimated_risk_level: RiskLevel = RiskLevel.LOW
    parent_task_id: str | None = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["estimated_risk_level"] = RiskLevel(self.estimated_risk_level).value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProposedSubtask:
        return cls(
            id=data["id"],
            agent_type=data["agent_type"],
            input=data["input"],
            estimated_risk_level=RiskLevel(data.get("estimated_risk_level", "low")),
            parent_task_id=data.get("parent_task_id"),
        )


@dataclass
class ConsensusDecision:
    approved: bool
    reviewed_by: str
    reviewer_type: str  # agent | human
    feedback: str | None = None
    rejected_subtask_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConsensusCheckResult:
    requires_consensus: bool
    reason: str | None = None
    risk_level: RiskLevel | None = None
    depth: int | None = None


@dataclass
class ReviewerConfig:
    agent_type: str
    prompt: str
    checkpoint_id: str


REVIEW_PROMPT_TEMPLATE = """You are reviewing a consensus checkpoint for high-stakes task execution.

{subtask_summary}

Please analyze these subtasks for:
1. Scope creep or mission drift from the parent task
2. Potential for infinite recursion or self-reinforcing loops
3. Appropriate risk assessment
4. Security or safety concerns

Respond with your decision in this JSON format:
{{
  "approved": true/false,
  "rejectedSubtaskIds": ["id1", "id2"], // optional - only if partially approving
  "feedback": "Your detailed reasoning"
}}"""


class ConsensusService:
    def __init__(
        self,
        db: Database,
        config: ConsensusConfig | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self.db = db
        self.config = config or ConsensusConfig()
        self.events = events
        self._sweeper: asyncio.Task | None = None

    def is_enabled(self) -> bool:
        return self.config.enabled

    def _publish(self, event_type: EventType, checkpoint: ConsensusCheckpoint) -> None:
        if self.events:
            self.events.publish(
                event_type,
                {"checkpoint_id": checkpoint.id, "task_id": checkpoint.task_id, "status": checkpoint.status},
            )

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def requires_consensus(
        self, risk_level: RiskLevel | str, depth: int, parent_task_id: str | None = None
    ) -> ConsensusCheckResult:
        risk_level = RiskLevel(risk_level)
        if not self.config.enabled:
            return ConsensusCheckResult(False)
        if not parent_task_id:
            return ConsensusCheckResult(False, "Root tasks do not require consensus", risk_level, depth)
        # Depth overrides the risk-level exemption
        if depth > self.config.max_depth:
            return ConsensusCheckResult(
                True,
                f"Task depth {depth} exceeds maximum allowed depth {self.config.max_depth}",
                risk_level,
                depth,
            )
        if risk_level not in self.config.require_for_risk_levels:
            return ConsensusCheckResult(
                False, f"Risk level '{risk_level.value}' does not require consensus", risk_level, depth
            )
        return ConsensusCheckResult(
            True, f"Risk level '{risk_level.value}' at depth {depth} requires consensus", risk_level, depth
        )

    def estimate_risk_level(self, agent_type: str, input: str | None = None) -> RiskLevel:
        if agent_type in self.config.high_risk_agent_types:
            return RiskLevel.HIGH
        if agent_type in self.config.medium_risk_agent_types:
            return RiskLevel.MEDIUM
        if input:
            lowered = input.lower()
            if any(pattern.lower() in lowered for pattern in self.config.high_risk_patterns):
                return RiskLevel.HIGH
            if any(pattern.lower() in lowered for pattern in self.config.medium_risk_patterns):
                return RiskLevel.MEDIUM
        return RiskLevel.LOW

    async def calculate_task_depth(self, parent_task_id: str | None) -> int:
        if not parent_task_id:
            return 0
        depth = 0
        current: str | None = parent_task_id
        async with self.db.session() as session:
            while current and depth < MAX_DEPTH_WALK:
                task = await dbops.get_task(session, current)
                if task is None:
                    break
                depth += 1
                current = task.parent_task_id
        return depth

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(
        self,
        task_id: str,
        proposed_subtasks: list[ProposedSubtask],
        risk_level: RiskLevel | str,
        parent_task_id: str | None = None,
    ) -> ConsensusCheckpoint:
        now = utcnow()
        async with self.db.session() as session:
            checkpoint = ConsensusCheckpoint(
                task_id=task_id,
                parent_task_id=parent_task_id,
                proposed_subtasks=[s.to_dict() for s in proposed_subtasks],
                risk_level=RiskLevel(risk_level).value,
                status=CheckpointStatus.PENDING.value,
                reviewer_strategy=self.config.reviewer_strategy.value,
                created_at=now,
                expires_at=now + timedelta(milliseconds=self.config.timeout_ms),
            )
            session.add(checkpoint)
            await session.flush()
            await dbops.add_checkpoint_event(
                session,
                checkpoint_id=checkpoint.id,
                event_type="created",
                actor_type="system",
                details={"subtask_count": len(proposed_subtasks), "risk_level": checkpoint.risk_level},
                created_at=now,
            )
        logger.info(
            "Created consensus checkpoint %s for task %s (%s, %d subtask(s))",
            checkpoint.id,
            task_id,
            checkpoint.risk_level,
            len(proposed_subtasks),
        )
        self._publish(EventType.CONSENSUS_CHECKPOINT_CREATED, checkpoint)
        return checkpoint

    async def get_checkpoint(self, checkpoint_id: str) -> ConsensusCheckpoint | None:
        async with self.db.session() as session:
            return await session.get(ConsensusCheckpoint, checkpoint_id)

    async def get_checkpoint_by_task_id(self, task_id: str) -> ConsensusCheckpoint | None:
        async with self.db.session() as session:
            return await dbops.get_checkpoint_by_task_id(session, task_id)

    async def list_pending(self, limit: int = 50, offset: int = 0) -> Sequence[ConsensusCheckpoint]:
        async with self.db.session() as session:
            return await dbops.list_pending_checkpoints(session, limit, offset)

    async def get_checkpoint_events(self, checkpoint_id: str) -> Sequence[ConsensusCheckpointEvent]:
        async with self.db.session() as session:
            return await dbops.get_checkpoint_events(session, checkpoint_id)

    async def start_agent_review(self, checkpoint_id: str) -> ReviewerConfig:
        checkpoint = await self.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFound(checkpoint_id)
        if checkpoint.status != CheckpointStatus.PENDING.value:
            raise CheckpointNotPending(checkpoint.status)

        agent_type = "adversarial"
        if checkpoint.reviewer_strategy == ReviewerStrategy.DIFFERENT_MODEL.value:
            agent_type = "reviewer"
        subtask_summary = "\n".join(
            f"{i}. [{s['agent_type']}] {s['input'][:100]}..."
            for i, s in enumerate(checkpoint.proposed_subtasks, 1)
        )
        logger.info("Starting agent review of %s with %s", checkpoint_id, agent_type)
        return ReviewerConfig(
            agent_type=agent_type,
            prompt=REVIEW_PROMPT_TEMPLATE.format(subtask_summary=subtask_summary),
            checkpoint_id=checkpoint_id,
        )

    async def submit_decision(self, checkpoint_id: str, decision: ConsensusDecision) -> ConsensusCheckpoint:
        expired = False
        async with self.db.session() as session:
            checkpoint = await session.get(ConsensusCheckpoint, checkpoint_id)
            if checkpoint is None:
                raise CheckpointNotFound(checkpoint_id)
            if checkpoint.status != CheckpointStatus.PENDING.value:
                raise CheckpointNotPending(checkpoint.status)

            now = utcnow()
            if now > checkpoint.expires_at:
                await self._close_timed_out(session, checkpoint)
                expired = True
            else:
                status = CheckpointStatus.APPROVED if decision.approved else CheckpointStatus.REJECTED
                checkpoint.status = status.value
                checkpoint.decision = decision.to_dict()
                checkpoint.reviewer_id = decision.reviewed_by
                checkpoint.reviewer_type = decision.reviewer_type
                checkpoint.decided_at = now
                await dbops.add_checkpoint_event(
                    session,
                    checkpoint_id=checkpoint_id,
                    event_type=status.value,
                    actor_id=decision.reviewed_by,
                    actor_type=decision.reviewer_type,
                    details={
                        "feedback": decision.feedback,
                        "rejected_subtask_ids": decision.rejected_subtask_ids,
                    },
                    created_at=now,
                )

        # The expiry is committed before the error surfaces
        if expired:
            self._publish_timeout(checkpoint)
            raise CheckpointExpired()

        logger.info(
            "Checkpoint %s %s by %s (%s)",
            checkpoint_id,
            checkpoint.status,
            decision.reviewed_by,
            decision.reviewer_type,
        )
        self._publish(
            EventType.CONSENSUS_CHECKPOINT_APPROVED
            if decision.approved
            else EventType.CONSENSUS_CHECKPOINT_REJECTED,
            checkpoint,
        )
        return checkpoint

    async def approve_checkpoint(
        self, checkpoint_id: str, reviewed_by: str, feedback: str | None = None
    ) -> ConsensusCheckpoint:
        return await self.submit_decision(
            checkpoint_id,
            ConsensusDecision(approved=True, reviewed_by=reviewed_by, reviewer_type="human", feedback=feedback),
        )

    async def reject_checkpoint(
        self,
        checkpoint_id: str,
        reviewed_by: str,
        feedback: str | None = None,
        rejected_subtask_ids: list[str] | None = None,
    ) -> ConsensusCheckpoint:
        return await self.submit_decision(
            checkpoint_id,
            ConsensusDecision(
                approved=False,
                reviewed_by=reviewed_by,
                reviewer_type="human",
                feedback=feedback,
                rejected_subtask_ids=rejected_subtask_ids or [],
            ),
        )

    async def get_approved_subtasks(self, checkpoint_id: str) -> list[ProposedSubtask]:
        checkpoint = await self.get_checkpoint(checkpoint_id)
        if checkpoint is None or checkpoint.status != CheckpointStatus.APPROVED.value:
            return []
        rejected = set((checkpoint.decision or {}).get("rejected_subtask_ids") or [])
        return [ProposedSubtask.from_dict(s) for s in checkpoint.proposed_subtasks if s["id"] not in rejected]

    async def _close_timed_out(self, session: AsyncSession, checkpoint: ConsensusCheckpoint) -> None:
        """Close a timed-out checkpoint: rejected under ``auto_reject``, otherwise expired."""
        now = utcnow()
        if self.config.auto_reject:
            checkpoint.status = CheckpointStatus.REJECTED.value
            checkpoint.decision = ConsensusDecision(
                approved=False, reviewed_by="system", reviewer_type="system", feedback="Checkpoint timed out"
            ).to_dict()
            checkpoint.reviewer_id = "system"
            checkpoint.reviewer_type = "system"
            checkpoint.decided_at = now
        else:
            checkpoint.status = CheckpointStatus.EXPIRED.value
        await dbops.add_checkpoint_event(
            session,
            checkpoint_id=checkpoint.id,
            event_type=checkpoint.status,
            actor_type="system",
            details={"reason": "timeout"},
            created_at=now,
        )

    def _publish_timeout(self, checkpoint: ConsensusCheckpoint) -> None:
        if checkpoint.status == CheckpointStatus.REJECTED.value:
            self._publish(EventType.CONSENSUS_CHECKPOINT_REJECTED, checkpoint)
        else:
            self._publish(EventType.CONSENSUS_CHECKPOINT_EXPIRED, checkpoint)

    async def expire_checkpoints(self) -> int:
        async with self.db.session() as session:
            stale = await dbops.list_expired_pending_checkpoints(session, utcnow())
            for checkpoint in stale:
                await self._close_timed_out(session, checkpoint)
        for checkpoint in stale:
            self._publish_timeout(checkpoint)
        if stale:
            logger.info("Expired %d checkpoint(s)", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(EXPIRATION_SWEEP_SECONDS)
            try:
                await self.expire_checkpoints()
            except Exception as exc:
                logger.warning("Checkpoint expiration sweep failed: %s", exc)

    def start(self) -> None:
        if self.config.enabled and self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_forever(), name="consensus-expiration"
            )

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

    async def reconfigure(self, config: ConsensusConfig) -> bool:
        if config == self.config:
            return False
        await self.stop()
        self.config = config
        self.start()
        return True
