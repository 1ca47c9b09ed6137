"""
cache.py — Redis read-through cache for session snapshots.

Namespace conventions:
  session:{session_id}   → FunnelSession JSON + job list    TTL settings.session_cache_ttl_seconds

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x — do NOT use aioredis separately)
  - Pool created once in lifespan, stored on app.state.redis
  - Helper functions take the client as a param — no module-level global state
  - Only GET /api/sessions/{id} reads from here. Every mutating route and the
    delivery worker call invalidate_session() synchronously; the worker and
    the sweep always read the database.
  - Logs only session_id (not data values) — no form answers in logs
"""
import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from funnelbot.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
SESSION_PREFIX = "session"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_session_key(session_id: str) -> str:
    """Build Redis key for a session snapshot: session:{session_id}"""
    return f"{SESSION_PREFIX}:{session_id}"


# ---------------------------------------------------------------------------
# Pool factory — called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup — stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Session snapshot helpers
# ---------------------------------------------------------------------------

async def get_cached_session(
    client: aioredis.Redis, session_id: str
) -> Optional[dict]:
    """
    Retrieve a cached session snapshot.
    Returns None on miss — caller loads from PostgreSQL and calls cache_session().
    """
    raw = await client.get(make_session_key(session_id))
    if raw is None:
        return None
    logger.debug("Session cache hit session_id=%s", session_id)
    return json.loads(raw)


async def cache_session(
    client: aioredis.Redis, session_id: str, snapshot: dict
) -> None:
    """Store a JSON-serialisable snapshot with the short session TTL."""
    ttl = settings.session_cache_ttl_seconds
    await client.setex(make_session_key(session_id), ttl, json.dumps(snapshot))
    logger.debug("Session snapshot cached session_id=%s ttl=%ds", session_id, ttl)


async def invalidate_session(
    client: Optional[aioredis.Redis], session_id: str
) -> None:
    """Drop the snapshot. No-op when the app runs without Redis."""
    if client is None:
        return
    await client.delete(make_session_key(session_id))
    logger.debug("Session cache invalidated session_id=%s", session_id)
