"""Concurrency limits for LLM calls and reusable agent instances."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class Semaphore:
    """FIFO counting semaphore that hands permits directly to waiters.

    Unlike ``asyncio.Semaphore`` it exposes its queue depth, which the
    concurrency stats report.
    """

    def __init__(self, name: str, max_permits: int) -> None:
        if max_permits < 1:
            raise ValueError("max_permits must be positive")
        self.name = name
        self.max_permits = max_permits
        self._permits = max_permits
        self._waiters: deque[asyncio.Future[None]] = deque()

    async def acquire(self) -> None:
        if self._permits > 0:
            self._permits -= 1
            logger.debug("Permit acquired (%s): available=%d", self.name, self._permits)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        logger.debug("Waiting for permit (%s): queued=%d", self.name, len(self._waiters))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # The permit was handed over just before cancellation; pass it on
                self.release()
            else:
                self._waiters.remove(fut)
            raise

    def try_acquire(self) -> bool:
        if self._permits > 0:
            self._permits -= 1
            return True
        return False

    def release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._permits = min(self._permits + 1, self.max_permits)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def state(self) -> dict[str, int]:
        return {"available": self._permits, "max_permits": self.max_permits, "queued": len(self._waiters)}

    def reset(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
        self._permits = self.max_permits
        logger.info("Semaphore reset (%s)", self.name)


class AgentPool:
    """Per-type list of reusable agent ids."""

    def __init__(self, max_pool_size: int = 10) -> None:
        self.max_pool_size = max_pool_size
        self._pool: dict[str, list[str]] = {}
        self._in_use: set[str] = set()

    def acquire(self, agent_type: str) -> str | None:
        for agent_id in self._pool.get(agent_type, []):
            if agent_id not in self._in_use:
                self._in_use.add(agent_id)
                logger.debug("Agent %s acquired from pool (%s)", agent_id, agent_type)
                return agent_id
        return None

    def release(self, agent_type: str, agent_id: str) -> None:
        self._in_use.discard(agent_id)
        pool = self._pool.setdefault(agent_type, [])
        if agent_id not in pool and len(pool) < self.max_pool_size:
            pool.append(agent_id)
            logger.debug("Agent %s returned to pool (%s)", agent_id, agent_type)

    def remove(self, agent_type: str, agent_id: str) -> None:
        self._in_use.discard(agent_id)
        pool = self._pool.get(agent_type)
        if pool and agent_id in pool:
            pool.remove(agent_id)

    def stats(self) -> dict[str, dict[str, int]]:
        result = {}
        for agent_type, ids in self._pool.items():
            in_use = sum(1 for agent_id in ids if agent_id in self._in_use)
            result[agent_type] = {"total": len(ids), "in_use": in_use, "available": len(ids) - in_use}
        return result

    def clear(self) -> None:
        self._pool.clear()
        self._in_use.clear()
