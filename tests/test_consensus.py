import asyncio

import pytest

from agentstack import db as dbops
from agentstack.config import ConsensusConfig, ReviewerStrategy, RiskLevel
from agentstack.errors import CheckpointExpired, CheckpointNotFound, CheckpointNotPending
from agentstack.models import utcnow
from agentstack.tasks.consensus import (
    CheckpointStatus,
    ConsensusDecision,
    ConsensusService,
    ProposedSubtask,
)


def _subtasks(*inputs: str) -> list[ProposedSubtask]:
    return [ProposedSubtask(agent_type="coder", input=text, estimated_risk_level=RiskLevel.HIGH) for text in inputs]


def test_requires_consensus_policy() -> None:
    service = ConsensusService(None, ConsensusConfig(enabled=True, max_depth=2))

    assert not service.requires_consensus("high", 1, None).requires_consensus
    assert service.requires_consensus("high", 1, "parent").requires_consensus
    assert service.requires_consensus("medium", 1, "parent").requires_consensus
    assert not service.requires_consensus("low", 1, "parent").requires_consensus

    deep = service.requires_consensus("low", 3, "parent")
    assert deep.requires_consensus
    assert "exceeds maximum allowed depth 2" in deep.reason


def test_disabled_consensus_never_required() -> None:
    service = ConsensusService(None, ConsensusConfig(enabled=False))

    result = service.requires_consensus(RiskLevel.HIGH, 10, "parent")

    assert result.requires_consensus is False
    assert result.reason is None


def test_estimate_risk_level() -> None:
    service = ConsensusService(None)

    assert service.estimate_risk_level("coder") == RiskLevel.HIGH
    assert service.estimate_risk_level("architect") == RiskLevel.MEDIUM
    assert service.estimate_risk_level("researcher", "Deploy to PRODUCTION") == RiskLevel.HIGH
    assert service.estimate_risk_level("tester", "update the fixtures") == RiskLevel.MEDIUM
    assert service.estimate_risk_level("tester", "read the logs") == RiskLevel.LOW


def test_custom_risk_patterns_match_case_insensitively() -> None:
    service = ConsensusService(None, ConsensusConfig(high_risk_patterns=["DROP TABLE"], medium_risk_patterns=["Migrate"]))

    assert service.estimate_risk_level("tester", "drop table users") == RiskLevel.HIGH
    assert service.estimate_risk_level("tester", "migrate the schema") == RiskLevel.MEDIUM


@pytest.mark.asyncio
async def test_calculate_task_depth(db) -> None:
    async with db.session() as session:
        await dbops.create_task(session, id="root", agent_type="coder", input="root")
        await dbops.create_task(session, id="child", agent_type="coder", input="child", parent_task_id="root")
    service = ConsensusService(db)

    assert await service.calculate_task_depth(None) == 0
    assert await service.calculate_task_depth("root") == 1
    assert await service.calculate_task_depth("child") == 2
    assert await service.calculate_task_depth("missing") == 0


@pytest.mark.asyncio
async def test_decision_after_timeout_expires_checkpoint(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True, timeout_ms=1))
    checkpoint = await service.create_checkpoint("task-1", _subtasks("rm -rf build"), RiskLevel.HIGH)

    await asyncio.sleep(0.005)
    with pytest.raises(CheckpointExpired, match="expired"):
        await service.approve_checkpoint(checkpoint.id, "alice")

    stored = await service.get_checkpoint(checkpoint.id)
    assert stored.status == CheckpointStatus.EXPIRED.value
    events = [e.event_type for e in await service.get_checkpoint_events(checkpoint.id)]
    assert events == ["created", "expired"]


@pytest.mark.asyncio
async def test_approve_records_decision(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True))
    checkpoint = await service.create_checkpoint("task-1", _subtasks("a", "b"), RiskLevel.HIGH, parent_task_id="p")

    decided = await service.approve_checkpoint(checkpoint.id, "alice", "looks fine")

    assert decided.status == "approved"
    assert decided.reviewer_id == "alice"
    assert decided.reviewer_type == "human"
    assert decided.decision["feedback"] == "looks fine"
    assert decided.decided_at is not None
    assert len(await service.get_approved_subtasks(checkpoint.id)) == 2
    with pytest.raises(CheckpointNotPending):
        await service.reject_checkpoint(checkpoint.id, "bob")


@pytest.mark.asyncio
async def test_partial_rejection_filters_approved_subtasks(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True))
    keep, drop = _subtasks("keep", "drop")
    checkpoint = await service.create_checkpoint("task-1", [keep, drop], RiskLevel.HIGH)

    await service.submit_decision(
        checkpoint.id,
        ConsensusDecision(approved=True, reviewed_by="agent-7", reviewer_type="agent", rejected_subtask_ids=[drop.id]),
    )

    approved = await service.get_approved_subtasks(checkpoint.id)
    assert [s.id for s in approved] == [keep.id]
    assert approved[0].estimated_risk_level == RiskLevel.HIGH


@pytest.mark.asyncio
async def test_rejected_checkpoint_has_no_approved_subtasks(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True))
    checkpoint = await service.create_checkpoint("task-1", _subtasks("a"), RiskLevel.MEDIUM)

    rejected = await service.reject_checkpoint(checkpoint.id, "bob", "too risky")

    assert rejected.status == "rejected"
    assert await service.get_approved_subtasks(checkpoint.id) == []
    with pytest.raises(CheckpointNotFound):
        await service.approve_checkpoint("missing", "bob")


@pytest.mark.asyncio
async def test_expire_checkpoints_sweeps_only_stale_pending(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True, timeout_ms=1))
    stale = await service.create_checkpoint("t1", _subtasks("a"), RiskLevel.HIGH)
    service.config = ConsensusConfig(enabled=True, timeout_ms=60_000)
    fresh = await service.create_checkpoint("t2", _subtasks("b"), RiskLevel.HIGH)
    await asyncio.sleep(0.005)

    assert await service.expire_checkpoints() == 1
    assert await service.expire_checkpoints() == 0

    assert (await service.get_checkpoint(stale.id)).status == "expired"
    pending = await service.list_pending()
    assert [c.id for c in pending] == [fresh.id]
    assert (await service.get_checkpoint_by_task_id("t2")).id == fresh.id


@pytest.mark.asyncio
async def test_start_agent_review_picks_reviewer(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True, reviewer_strategy=ReviewerStrategy.DIFFERENT_MODEL))
    checkpoint = await service.create_checkpoint("task-1", _subtasks("drop the users table"), RiskLevel.HIGH)

    reviewer = await service.start_agent_review(checkpoint.id)

    assert reviewer.agent_type == "reviewer"
    assert "1. [coder] drop the users table" in reviewer.prompt
    assert reviewer.checkpoint_id == checkpoint.id


@pytest.mark.asyncio
async def test_reconfigure_restarts_sweeper_only_on_change(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True))
    service.start()
    first = service._sweeper

    assert await service.reconfigure(ConsensusConfig(enabled=True)) is False
    assert service._sweeper is first

    assert await service.reconfigure(ConsensusConfig(enabled=False)) is True
    assert service._sweeper is None
    await service.stop()


@pytest.mark.asyncio
async def test_expires_at_follows_timeout(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True, timeout_ms=120_000))
    before = utcnow()

    checkpoint = await service.create_checkpoint("task-1", _subtasks("a"), RiskLevel.HIGH)

    delta = (checkpoint.expires_at - before).total_seconds()
    assert 119 < delta < 121


@pytest.mark.asyncio
async def test_auto_reject_rejects_timed_out_checkpoint(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True, timeout_ms=1, auto_reject=True))
    checkpoint = await service.create_checkpoint("task-1", _subtasks("rm -rf build"), RiskLevel.HIGH)

    await asyncio.sleep(0.005)
    with pytest.raises(CheckpointExpired):
        await service.approve_checkpoint(checkpoint.id, "alice")

    stored = await service.get_checkpoint(checkpoint.id)
    assert stored.status == CheckpointStatus.REJECTED.value
    assert stored.reviewer_type == "system"
    assert stored.decision["feedback"] == "Checkpoint timed out"
    assert await service.get_approved_subtasks(checkpoint.id) == []
    events = await service.get_checkpoint_events(checkpoint.id)
    assert [e.event_type for e in events] == ["created", "rejected"]
    assert events[-1].details == {"reason": "timeout"}


@pytest.mark.asyncio
async def test_auto_reject_sweep(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True, timeout_ms=1, auto_reject=True))
    stale = await service.create_checkpoint("t1", _subtasks("a"), RiskLevel.HIGH)
    await asyncio.sleep(0.005)

    assert await service.expire_checkpoints() == 1

    assert (await service.get_checkpoint(stale.id)).status == "rejected"
    assert await service.list_pending() == []


@pytest.mark.asyncio
async def test_missing_checkpoint_error_names_the_id(db) -> None:
    service = ConsensusService(db, ConsensusConfig(enabled=True))

    with pytest.raises(CheckpointNotFound, match="missing-checkpoint"):
        await service.approve_checkpoint("missing-checkpoint", "bob")
