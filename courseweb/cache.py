"""
cache.py — Redis connection layer for courseweb.

Namespace conventions:
  presence:{channel}:conns    zset  "{key}|{connection_id}" scored by expiry time
  presence:{channel}:meta     hash  "{key}|{connection_id}" → JSON metadata
  presence:{channel}:events   pub/sub topic for join / leave events
  changes:{table}             pub/sub topic for row change events

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x)
  - Pool created once in lifespan, stored on app.state.redis
  - Helpers take the client as a param; no module-level global state
"""
import logging

import redis.asyncio as aioredis
from starlette.requests import HTTPConnection

from courseweb.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
PRESENCE_PREFIX = "presence"
CHANGES_PREFIX = "changes"
PROGRESS_TABLE = "progress_tracking"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_presence_conns_key(channel: str) -> str:
    return f"{PRESENCE_PREFIX}:{channel}:conns"


def make_presence_meta_key(channel: str) -> str:
    return f"{PRESENCE_PREFIX}:{channel}:meta"


def make_presence_events_channel(channel: str) -> str:
    return f"{PRESENCE_PREFIX}:{channel}:events"


def make_changes_channel(table: str = PROGRESS_TABLE) -> str:
    """Pub/sub topic carrying INSERT / UPDATE / DELETE events for one table."""
    return f"{CHANGES_PREFIX}:{table}"


# ---------------------------------------------------------------------------
# Pool factory: called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
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
# FastAPI dependency
# ---------------------------------------------------------------------------

def get_redis(conn: HTTPConnection) -> aioredis.Redis:
    """Return the pool opened in lifespan (HTTP and WebSocket). Overridden in tests."""
    return conn.app.state.redis
