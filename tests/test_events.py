import asyncio
import logging

import pytest

from agentstack.background import BackgroundTasks
from agentstack.events import EventEmitter, EventRecorder, EventType


@pytest.mark.asyncio
async def test_publish_delivers_to_sync_and_async_handlers() -> None:
    emitter = EventEmitter()
    recorder = EventRecorder()
    seen = []

    async def async_handler(event) -> None:
        seen.append(event.payload["id"])

    emitter.on_event(recorder)
    emitter.on_event(async_handler)
    event = emitter.publish(EventType.TASK_CREATED, {"id": "t1"})
    await emitter.background.drain()

    assert recorder.events == [event]
    assert seen == ["t1"]
    assert event.to_dict()["type"] == "task:created"


@pytest.mark.asyncio
async def test_handler_errors_are_logged_not_raised(caplog) -> None:
    emitter = EventEmitter()
    recorder = EventRecorder()

    def broken(_event) -> None:
        raise RuntimeError("boom")

    emitter.on_event(broken)
    emitter.on_event(recorder)
    with caplog.at_level(logging.WARNING):
        await emitter.emit(emitter.publish(EventType.AGENT_SPAWNED))
        await emitter.background.drain()

    assert "boom" in caplog.text
    assert len(recorder.events) == 2


def test_publish_without_loop_is_dropped() -> None:
    emitter = EventEmitter()
    recorder = EventRecorder()
    emitter.on_event(recorder)

    emitter.publish(EventType.AGENT_SPAWNED)

    assert recorder.events == []


def test_recorder_keeps_latest_events() -> None:
    emitter = EventEmitter()
    recorder = EventRecorder(limit=2)
    for i in range(3):
        recorder(emitter.publish(EventType.TASK_CREATED, {"n": i}))

    assert [e.payload["n"] for e in recorder.events] == [1, 2]


@pytest.mark.asyncio
async def test_background_drain_waits_for_follow_up_tasks() -> None:
    background = BackgroundTasks()
    done = []

    async def second() -> None:
        done.append("second")

    async def first() -> None:
        await asyncio.sleep(0)
        background.spawn(second())
        done.append("first")

    background.spawn(first())
    await background.drain()

    assert done == ["first", "second"]
    assert background.pending == 0


@pytest.mark.asyncio
async def test_background_failures_are_logged(caplog) -> None:
    background = BackgroundTasks()

    async def fail() -> None:
        raise ValueError("nope")

    with caplog.at_level(logging.WARNING):
        background.spawn(fail(), name="failing")
        await background.drain()
        await asyncio.sleep(0)

    assert "failing" in caplog.text


@pytest.mark.asyncio
async def test_cancel_all() -> None:
    background = BackgroundTasks()
    task = background.spawn(asyncio.sleep(10))

    await background.cancel_all()

    assert task.cancelled()
