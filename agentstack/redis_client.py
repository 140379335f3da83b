"""Async Redis client for event publication."""

from redis.asyncio import ConnectionPool, Redis

from .config import settings

_pools: dict[str, ConnectionPool] = {}


def get_redis_client(url: str | None = None) -> Redis:
    """Get an async Redis client from a shared pool, created lazily per URL."""
    url = url or settings.redis_url
    pool = _pools.get(url)
    if pool is None:
        pool = ConnectionPool.from_url(url, max_connections=20, decode_responses=True)
        _pools[url] = pool
    return Redis(connection_pool=pool)


async def close_pools() -> None:
    for pool in _pools.values():
        await pool.disconnect()
    _pools.clear()
