from dataclasses import dataclass

from agentstack.coordination.queue import TaskQueue


@dataclass
class _Task:
    id: str
    agent_type: str = "coder"


def test_higher_priority_dequeues_first() -> None:
    queue = TaskQueue()
    for task_id, priority in (("low", 1), ("high", 10), ("mid", 5)):
        queue.enqueue(_Task(task_id), priority)

    order = [queue.dequeue().task_id for _ in range(3)]

    assert order == ["high", "mid", "low"]
    assert queue.dequeue() is None


def test_fifo_within_same_priority() -> None:
    queue = TaskQueue()
    for task_id in ("a", "b", "c"):
        queue.enqueue(_Task(task_id), 5)

    assert [queue.dequeue().task_id for _ in range(3)] == ["a", "b", "c"]


def test_dequeue_by_agent_type_skips_other_types() -> None:
    queue = TaskQueue()
    queue.enqueue(_Task("write", "coder"), 10)
    queue.enqueue(_Task("check", "tester"), 1)

    entry = queue.dequeue("tester")

    assert entry.task_id == "check"
    assert queue.dequeue("researcher") is None
    assert len(queue) == 1


def test_dequeued_task_moves_to_processing_until_completed() -> None:
    queue = TaskQueue()
    queue.enqueue(_Task("t1"))
    queue.dequeue()

    assert queue.get_status() == {"queued": 0, "processing": 1, "total": 1}
    assert not queue.is_empty

    empty_events = []
    queue.on("queue:empty", lambda: empty_events.append(True))
    assert queue.complete("t1") is True
    assert queue.complete("t1") is False
    assert queue.is_empty
    assert empty_events == [True]


def test_assign_only_applies_to_processing_tasks() -> None:
    queue = TaskQueue()
    queue.enqueue(_Task("t1"))
    assert queue.assign("t1", "agent-1") is False

    queue.dequeue()
    assigned = []
    queue.on("task:assigned", lambda entry, agent_id: assigned.append((entry.task_id, agent_id)))

    assert queue.assign("t1", "agent-1") is True
    assert queue.get_processing()[0].assigned_to == "agent-1"
    assert assigned == [("t1", "agent-1")]


def test_requeue_lowers_priority_and_clears_assignment() -> None:
    queue = TaskQueue()
    queue.enqueue(_Task("retry"), 5)
    queue.enqueue(_Task("other"), 4)
    entry = queue.dequeue()
    queue.assign(entry.task_id, "agent-1")

    assert queue.requeue("retry") is True

    peeked = queue.peek()
    assert [e.task_id for e in peeked] == ["other", "retry"]
    assert peeked[1].priority == 4
    assert peeked[1].assigned_to is None
    assert queue.requeue("missing") is False


def test_task_added_event_and_clear() -> None:
    queue = TaskQueue()
    added = []
    queue.on("task:added", lambda entry: added.append(entry.task_id))
    queue.enqueue(_Task("t1"))
    queue.enqueue(_Task("t2"))
    queue.dequeue()

    queue.clear()

    assert added == ["t1", "t2"]
    assert queue.get_status()["total"] == 0
