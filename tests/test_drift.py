import pytest

from agentstack import db as dbops
from agentstack.config import DriftBehavior, DriftDetectionConfig
from agentstack.events import EventEmitter, EventRecorder, EventType
from agentstack.tasks.drift import DriftAction, DriftDetectionService, RelationshipType
from tests.conftest import FakeEmbeddingProvider


async def _make_tasks(db, *task_ids: str) -> None:
    async with db.session() as session:
        for task_id in task_ids:
            await dbops.create_task(session, id=task_id, agent_type="coder", input=f"input for {task_id}")


def _service(db, embeddings=None, **config) -> DriftDetectionService:
    config.setdefault("enabled", True)
    config.setdefault("async_embedding", False)
    return DriftDetectionService(db, embeddings or FakeEmbeddingProvider(), DriftDetectionConfig(**config))


@pytest.mark.asyncio
async def test_identical_ancestor_is_prevented(db) -> None:
    await _make_tasks(db, "A", "B")
    service = _service(db, threshold=0.9, behavior=DriftBehavior.PREVENT)
    await service.create_task_relationship("A", "B", RelationshipType.PARENT_OF)
    await service.store_task_embedding("A", [1.0, 0.0, 0.0])

    result = await service.check_drift("repeat the work of A", "coder", parent_task_id="B")

    assert result.is_drift is True
    assert result.action == DriftAction.PREVENTED
    assert result.most_similar_task_id == "A"
    assert result.most_similar_task_input == "input for A"
    assert result.max_similarity == pytest.approx(1.0)
    assert result.checked_ancestors == 2


@pytest.mark.asyncio
async def test_drift_in_warn_mode_logs_event_and_publishes(db) -> None:
    await _make_tasks(db, "P")
    recorder = EventRecorder()
    events = EventEmitter()
    events.on_event(recorder)
    service = DriftDetectionService(
        db, FakeEmbeddingProvider(), DriftDetectionConfig(enabled=True, threshold=0.9), events=events
    )
    await service.store_task_embedding("P", [1.0, 0.0, 0.0])

    result = await service.check_drift("same thing", "coder", "P")
    await events.background.drain()

    assert result.action == DriftAction.WARNED
    assert result.is_drift
    logged = await service.get_recent_drift_events()
    assert len(logged) == 1
    assert logged[0].ancestor_task_id == "P"
    assert logged[0].action_taken == "warned"
    assert logged[0].task_input == "same thing"
    assert len(recorder.of_type(EventType.DRIFT_DETECTED)) == 1


@pytest.mark.asyncio
async def test_warning_threshold_band_is_not_drift(db) -> None:
    await _make_tasks(db, "P")
    embeddings = FakeEmbeddingProvider(default=[0.8, 0.6, 0.0])
    service = _service(db, embeddings, threshold=0.95, warning_threshold=0.7)
    await service.store_task_embedding("P", [1.0, 0.0, 0.0])

    result = await service.check_drift("related", "coder", "P")

    assert result.is_drift is False
    assert result.action == DriftAction.WARNED
    assert result.max_similarity == pytest.approx(0.8)
    assert await service.get_recent_drift_events() == []


@pytest.mark.asyncio
async def test_dissimilar_task_is_allowed(db) -> None:
    await _make_tasks(db, "P")
    service = _service(db, FakeEmbeddingProvider(default=[0.0, 1.0, 0.0]))
    await service.store_task_embedding("P", [1.0, 0.0, 0.0])

    result = await service.check_drift("different", "coder", "P")

    assert result.action == DriftAction.ALLOWED
    assert result.max_similarity == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_check_is_skipped_when_disabled_or_rootless(db) -> None:
    embeddings = FakeEmbeddingProvider()
    disabled = _service(db, embeddings, enabled=False)
    no_provider = DriftDetectionService(db, None, DriftDetectionConfig(enabled=True))
    enabled = _service(db, embeddings)

    assert (await disabled.check_drift("x", "coder", "P")).checked_ancestors == 0
    assert not no_provider.is_enabled()
    assert (await enabled.check_drift("x", "coder", None)).action == DriftAction.ALLOWED
    assert embeddings.calls == []


@pytest.mark.asyncio
async def test_no_stored_embeddings_skips_embedding_call(db) -> None:
    await _make_tasks(db, "P")
    embeddings = FakeEmbeddingProvider()
    service = _service(db, embeddings)

    result = await service.check_drift("x", "coder", "P")

    assert result.checked_ancestors == 1
    assert result.is_drift is False
    assert embeddings.calls == []


@pytest.mark.asyncio
async def test_embedding_failure_fails_open(db) -> None:
    class Broken(FakeEmbeddingProvider):
        async def embed(self, text: str) -> list[float]:
            raise RuntimeError("embedding backend down")

    await _make_tasks(db, "P")
    service = _service(db, Broken())
    await service.store_task_embedding("P", [1.0, 0.0, 0.0])

    result = await service.check_drift("x", "coder", "P")

    assert result.is_drift is False
    assert result.action == DriftAction.ALLOWED


@pytest.mark.asyncio
async def test_ancestor_walk_handles_cycles_and_edge_types(db) -> None:
    await _make_tasks(db, "A", "B", "C", "D")
    service = _service(db)
    await service.create_task_relationship("A", "B", "parent_of")
    await service.create_task_relationship("B", "C", "derived_from")
    await service.create_task_relationship("C", "A", "parent_of")
    await service.create_task_relationship("D", "C", "depends_on")

    ancestors = await service.get_task_ancestors("C", max_depth=5)

    assert [(a.task_id, a.depth) for a in ancestors] == [("B", 1), ("A", 2)]
    assert [(a.task_id, a.depth) for a in await service.get_task_ancestors("C", max_depth=1)] == [("B", 1)]


@pytest.mark.asyncio
async def test_relationships_are_deduplicated(db) -> None:
    await _make_tasks(db, "A", "B")
    service = _service(db)

    first = await service.create_task_relationship("A", "B", RelationshipType.SUPERSEDES, {"why": "rewrite"})
    second = await service.create_task_relationship("A", "B", "supersedes")
    other = await service.create_task_relationship("A", "B", "depends_on")

    assert first == second
    assert other != first
    assert len(await service.get_task_relationships("A", "outgoing")) == 2
    assert len(await service.get_task_relationships("B", "incoming")) == 2
    assert await service.get_task_relationships("A", "incoming") == []


@pytest.mark.asyncio
async def test_index_task_stores_embedding(db) -> None:
    await _make_tasks(db, "T")
    embeddings = FakeEmbeddingProvider(vectors={"hello": [0.0, 0.0, 2.0]})
    service = _service(db, embeddings, async_embedding=True)

    await service.index_task("T", "hello")
    await service.background.drain()

    stored = await service.get_task_embedding("T")
    assert stored.embedding == [0.0, 0.0, 2.0]
    assert stored.model == "fake-embedding"
    assert stored.dimensions == 3


@pytest.mark.asyncio
async def test_drift_metrics_aggregate_by_action(db) -> None:
    service = _service(db)
    await service.log_drift_event(
        task_type="coder", ancestor_task_id="A", similarity_score=0.96, threshold=0.95, action_taken="warned"
    )
    await service.log_drift_event(
        task_type="coder", ancestor_task_id="A", similarity_score=1.0, threshold=0.95, action_taken="prevented"
    )

    metrics = await service.get_drift_detection_metrics()

    assert metrics["total_events"] == 2
    assert metrics["warned_count"] == 1
    assert metrics["prevented_count"] == 1
    assert metrics["allowed_count"] == 0
    assert metrics["average_similarity"] == pytest.approx(0.98)


@pytest.mark.asyncio
async def test_reconfigure_reports_change(db) -> None:
    service = _service(db)

    assert service.reconfigure(DriftDetectionConfig(enabled=True, async_embedding=False)) is False
    assert service.reconfigure(DriftDetectionConfig(enabled=False)) is True
    assert not service.is_enabled()


def test_warning_threshold_must_be_below_threshold() -> None:
    with pytest.raises(ValueError):
        DriftDetectionConfig(threshold=0.8, warning_threshold=0.9)
