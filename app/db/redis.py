"""Redis connection management.

When REDIS_URL is set, learner progress documents are kept in Redis so
every API instance sees the same state for a learner.  When it is not
set (local dev, tests), storage falls back to an in-process dict and no
Redis server is needed.

The client is redis.asyncio backed by a connection pool, so handlers
waiting on Redis yield the event loop instead of blocking it.  The
lifespan hook in app.main owns the client and closes it with aclose().
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from app.core.config import Settings
from app.services.progress_storage import (
    InMemoryProgressStorage,
    ProgressStorage,
    RedisProgressStorage,
)

logger = logging.getLogger(__name__)


def create_redis_client(settings: Settings) -> aioredis.Redis | None:  # type: ignore[type-arg]
    if not settings.redis_url:
        return None
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,  # str in, str out; the document is JSON text
        max_connections=20,
    )


def build_progress_storage(client: aioredis.Redis | None) -> ProgressStorage:  # type: ignore[type-arg]
    if client is None:
        logger.info("No REDIS_URL configured; learner progress is kept in memory")
        return InMemoryProgressStorage()
    return RedisProgressStorage(client)


async def ping(client: aioredis.Redis | None) -> str:  # type: ignore[type-arg]
    """Health-check helper: ok | degraded | not_configured."""
    if client is None:
        return "not_configured"
    try:
        await client.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
    except Exception:
        logger.warning("Redis ping failed", exc_info=True)
        return "degraded"
    return "ok"
