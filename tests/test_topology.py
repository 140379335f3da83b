from dataclasses import dataclass

import pytest

from agentstack.agents.registry import AgentRegistry
from agentstack.agents.spawner import AgentStatus, Spawner
from agentstack.config import Settings
from agentstack.coordination.bus import MessageBus
from agentstack.coordination.topology import HierarchicalCoordinator
from agentstack.providers import ProviderRegistry


@dataclass
class _Task:
    id: str
    agent_type: str = "coder"


@pytest.fixture
def coordinator() -> HierarchicalCoordinator:
    spawner = Spawner(AgentRegistry(), ProviderRegistry(Settings(default_provider="fake")))
    coord = HierarchicalCoordinator(spawner, MessageBus(), max_workers=1, session_id="s1")
    coord.initialize()
    return coord


def _assignments(bus: MessageBus) -> list:
    sent = []
    bus.subscribe_all(lambda m: sent.append(m) if m.type == "task:assign" else None)
    return sent


def test_initialize_spawns_running_coordinator(coordinator: HierarchicalCoordinator) -> None:
    agent = coordinator.coordinator

    assert agent.type == "coordinator"
    assert agent.name == "main-coordinator"
    assert agent.status == AgentStatus.RUNNING


def test_submitted_task_is_assigned_to_spawned_worker(coordinator: HierarchicalCoordinator) -> None:
    sent = _assignments(coordinator.bus)

    coordinator.submit_task(_Task("t1", "tester"))

    assert len(coordinator.workers) == 1
    worker = next(iter(coordinator.workers.values()))
    assert worker.type == "tester"
    assert worker.status == AgentStatus.RUNNING
    assert [(m.to, m.payload["task"].id) for m in sent] == [(worker.id, "t1")]


def test_worker_limit_holds_tasks_until_completion(coordinator: HierarchicalCoordinator) -> None:
    sent = _assignments(coordinator.bus)
    coordinator.submit_task(_Task("t1"))
    coordinator.submit_task(_Task("t2"))

    assert coordinator.get_status()["queue"] == {"queued": 1, "processing": 1, "total": 2}

    worker_id = sent[0].to
    coordinator.bus.send(worker_id, coordinator.coordinator.id, "task:completed", {"task_id": "t1"})

    assert [m.payload["task"].id for m in sent] == ["t1", "t2"]
    assert coordinator.get_status()["queue"] == {"queued": 0, "processing": 1, "total": 1}


def test_failed_task_is_requeued(coordinator: HierarchicalCoordinator) -> None:
    sent = _assignments(coordinator.bus)
    coordinator.submit_task(_Task("t1"))
    worker_id = sent[0].to

    coordinator.bus.send(worker_id, coordinator.coordinator.id, "task:failed", {"taskId": "t1"})

    # Requeued and immediately reassigned to the released worker
    assert [m.payload["task"].id for m in sent] == ["t1", "t1"]


def test_shutdown_stops_all_agents(coordinator: HierarchicalCoordinator) -> None:
    spawner = coordinator.spawner
    coordinator.submit_task(_Task("t1"))
    assert spawner.count() == 2

    coordinator.shutdown()

    assert spawner.count() == 0
    assert coordinator.coordinator is None
    assert coordinator.queue.is_empty


def test_idle_worker_of_other_type_does_not_block_new_type() -> None:
    spawner = Spawner(AgentRegistry(), ProviderRegistry(Settings(default_provider="fake")))
    coord = HierarchicalCoordinator(spawner, MessageBus(), max_workers=5)
    coord.initialize()
    sent = _assignments(coord.bus)
    coord.submit_task(_Task("t1", "coder"))
    coord.bus.send(sent[0].to, coord.coordinator.id, "task:completed", {"task_id": "t1"})

    coord.submit_task(_Task("t2", "tester"))

    assert sorted(w.type for w in coord.workers.values()) == ["coder", "tester"]
    assert coord.get_status()["queue"] == {"queued": 0, "processing": 1, "total": 1}
    tester = next(w for w in coord.workers.values() if w.type == "tester")
    assert (sent[-1].to, sent[-1].payload["task"].id) == (tester.id, "t2")


def test_idle_worker_takes_matching_task_behind_the_head(coordinator: HierarchicalCoordinator) -> None:
    sent = _assignments(coordinator.bus)
    coordinator.submit_task(_Task("t1", "coder"))
    worker_id = sent[0].to
    coordinator.submit_task(_Task("t2", "tester"), priority=9)
    coordinator.submit_task(_Task("t3", "coder"), priority=1)

    coordinator.bus.send(worker_id, coordinator.coordinator.id, "task:completed", {"task_id": "t1"})

    # At the worker cap the tester task waits; the idle coder skips ahead to t3
    assert [m.payload["task"].id for m in sent] == ["t1", "t3"]
    assert [e.task_id for e in coordinator.queue.peek()] == ["t2"]
