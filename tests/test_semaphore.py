import asyncio

import pytest

from agentstack.agents.semaphore import AgentPool, Semaphore


def test_semaphore_requires_positive_permits() -> None:
    with pytest.raises(ValueError):
        Semaphore("bad", 0)


def test_try_acquire_respects_limit() -> None:
    sem = Semaphore("s", 2)

    assert sem.try_acquire() is True
    assert sem.try_acquire() is True
    assert sem.try_acquire() is False
    sem.release()
    assert sem.state() == {"available": 1, "max_permits": 2, "queued": 0}


@pytest.mark.asyncio
async def test_waiters_are_served_in_fifo_order() -> None:
    sem = Semaphore("s", 1)
    await sem.acquire()
    order: list[int] = []

    async def worker(n: int) -> None:
        await sem.acquire()
        order.append(n)

    tasks = [asyncio.create_task(worker(n)) for n in range(3)]
    await asyncio.sleep(0)
    assert sem.state()["queued"] == 3

    for _ in range(3):
        sem.release()
        await asyncio.sleep(0)

    await asyncio.gather(*tasks)
    assert order == [0, 1, 2]


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_queue() -> None:
    sem = Semaphore("s", 1)
    await sem.acquire()
    waiter = asyncio.create_task(sem.acquire())
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert sem.state()["queued"] == 0
    sem.release()
    assert sem.state()["available"] == 1


@pytest.mark.asyncio
async def test_hold_releases_on_error() -> None:
    sem = Semaphore("s", 1)

    with pytest.raises(RuntimeError):
        async with sem.hold():
            raise RuntimeError("fail")

    assert sem.state()["available"] == 1


@pytest.mark.asyncio
async def test_reset_wakes_waiters_and_restores_permits() -> None:
    sem = Semaphore("s", 1)
    await sem.acquire()
    waiter = asyncio.create_task(sem.acquire())
    await asyncio.sleep(0)

    sem.reset()
    await waiter

    assert sem.state() == {"available": 1, "max_permits": 1, "queued": 0}


def test_pool_reuses_released_agents() -> None:
    pool = AgentPool(max_pool_size=1)
    assert pool.acquire("coder") is None

    pool.release("coder", "a1")
    pool.release("coder", "a2")  # pool is full

    assert pool.acquire("coder") == "a1"
    assert pool.acquire("coder") is None
    assert pool.stats() == {"coder": {"total": 1, "in_use": 1, "available": 0}}

    pool.remove("coder", "a1")
    assert pool.stats() == {"coder": {"total": 0, "in_use": 0, "available": 0}}
