from __future__ import annotations

from typing import Any

import redis.asyncio as redis

from fineflow_budget.infrastructure.memory_client import InMemoryRedis


def build_redis_client(redis_url: str, *, max_connections: int = 50) -> Any:
    """Return a pooled async Redis client, or an in-process one for ``memory://``."""

    if redis_url == "memory://":
        return InMemoryRedis()
    pool = redis.ConnectionPool.from_url(
        redis_url,
        max_connections=max_connections,
        decode_responses=False,
    )
    return redis.Redis(connection_pool=pool)
