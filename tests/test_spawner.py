import pytest

from agentstack.agents.registry import AgentRegistry
from agentstack.agents.spawner import AgentStatus, Spawner
from agentstack.config import ResourceExhaustionConfig, ResourceThresholds, Settings
from agentstack.errors import (
    AgentNotFound,
    AgentPausedError,
    CapacityExceeded,
    DuplicateAgentName,
    ProviderError,
    UnknownAgentType,
)
from agentstack.monitoring.resource_exhaustion import ResourceExhaustionService
from agentstack.providers import ProviderRegistry
from tests.conftest import FakeChatProvider


def _spawner(chat: FakeChatProvider | None = None, **kwargs) -> Spawner:
    providers = ProviderRegistry(Settings(default_provider="fake"))
    providers.register("fake", chat or FakeChatProvider())
    return Spawner(AgentRegistry(), providers, **kwargs)


def test_capacity_limit_and_recovery() -> None:
    spawner = _spawner(max_agents=20)
    agents = [spawner.spawn("coder") for _ in range(20)]

    with pytest.raises(CapacityExceeded):
        spawner.spawn("coder")

    assert spawner.stop(agents[0].id) is True
    assert spawner.spawn("coder").type == "coder"
    assert spawner.count() == 20


def test_unknown_type_and_duplicate_name_are_rejected() -> None:
    spawner = _spawner()

    with pytest.raises(UnknownAgentType):
        spawner.spawn("wizard")

    spawner.spawn("tester", name="qa")
    with pytest.raises(DuplicateAgentName):
        spawner.spawn("coder", name="qa")


def test_lookup_listing_and_stop_by_name() -> None:
    spawner = _spawner()
    a = spawner.spawn("coder", name="alpha", session_id="s1")
    spawner.spawn("tester", name="beta", session_id="s2")

    assert spawner.get_by_name("alpha") is a
    assert [x.name for x in spawner.list("s1")] == ["alpha"]
    assert spawner.count("s2") == 1

    assert spawner.stop_by_name("alpha") is True
    assert spawner.get(a.id) is None
    assert spawner.stop_by_name("alpha") is False
    # Name is free again
    assert spawner.spawn("coder", name="alpha").name == "alpha"


def test_stop_all_for_session() -> None:
    spawner = _spawner()
    spawner.spawn("coder", session_id="s1")
    spawner.spawn("coder", session_id="s1")
    spawner.spawn("coder", session_id="s2")

    assert spawner.stop_all("s1") == 2
    assert spawner.count() == 1


@pytest.mark.asyncio
async def test_execute_agent_returns_response_and_resets_status() -> None:
    chat = FakeChatProvider(["def add(a, b): return a + b"])
    spawner = _spawner(chat)
    agent = spawner.spawn("coder")

    result = await spawner.execute_agent(agent.id, "write add", context="python")

    assert result.response == "def add(a, b): return a + b"
    assert result.model == "fake-model"
    assert spawner.get(agent.id).status == AgentStatus.IDLE
    messages = chat.calls[0][0]
    assert messages[0].role == "system"
    assert [m.role for m in messages[1:]] == ["user", "assistant", "user"]
    assert messages[-1].content == "write add"


@pytest.mark.asyncio
async def test_execute_agent_failure_marks_agent_failed() -> None:
    spawner = _spawner(FakeChatProvider([ProviderError("rate limited")]))
    agent = spawner.spawn("coder")

    with pytest.raises(ProviderError):
        await spawner.execute_agent(agent.id, "work")

    assert spawner.get(agent.id).status == AgentStatus.FAILED
    assert spawner.semaphore.state()["available"] == spawner.semaphore.max_permits


@pytest.mark.asyncio
async def test_execute_agent_errors() -> None:
    spawner = _spawner()
    with pytest.raises(AgentNotFound):
        await spawner.execute_agent("missing", "work")

    agent = spawner.spawn("coder")
    with pytest.raises(ProviderError):
        await spawner.execute_agent(agent.id, "work", provider="nonexistent")


@pytest.mark.asyncio
async def test_run_agent_reuses_pooled_instance() -> None:
    spawner = _spawner()

    first = await spawner.run_agent("researcher", "look around")
    second = await spawner.run_agent("researcher", "look again")

    assert first.agent_id == second.agent_id
    assert spawner.count() == 1
    assert spawner.get_concurrency_stats()["pool"]["researcher"]["available"] == 1


@pytest.mark.asyncio
async def test_resource_tracking_and_pause() -> None:
    resources = ResourceExhaustionService(
        None, ResourceExhaustionConfig(thresholds=ResourceThresholds(max_api_calls=1))
    )
    spawner = _spawner(resources=resources)
    agent = spawner.spawn("coder")
    assert resources.get_agent_metrics(agent.id) is not None

    await spawner.execute_agent(agent.id, "first call")

    metrics = resources.get_agent_metrics(agent.id)
    assert metrics.api_calls_count == 1
    assert metrics.tokens_consumed == 15
    assert resources.is_agent_paused(agent.id)

    with pytest.raises(AgentPausedError):
        await spawner.execute_agent(agent.id, "second call")

    spawner.stop(agent.id)
    assert resources.get_agent_metrics(agent.id) is None


@pytest.mark.asyncio
async def test_agents_persist_and_restore(db, providers) -> None:
    spawner = Spawner(AgentRegistry(), providers, db=db)
    kept = spawner.spawn("coder", name="kept", metadata={"team": "core"})
    dropped = spawner.spawn("tester", name="dropped")
    spawner.update_status(kept.id, AgentStatus.RUNNING)
    spawner.stop(dropped.id)
    await spawner.flush()

    restored = Spawner(AgentRegistry(), providers, db=db)
    assert await restored.restore_agents() == 1

    agent = restored.get_by_name("kept")
    assert agent.id == kept.id
    assert agent.status == AgentStatus.RUNNING
    assert agent.metadata == {"team": "core"}
    assert restored.get_agents_by_status(AgentStatus.RUNNING) == [agent]
