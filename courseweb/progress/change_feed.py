"""
change_feed.py — row change notifications for progress_tracking.

Writers publish a ChangeEvent after their transaction commits; readers open a
FeedSubscription and iterate it. Transport is Redis pub/sub on
changes:progress_tracking, so a subscriber only sees events published while it
is subscribed. Anything older has to be read from the database.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from courseweb.cache import PROGRESS_TABLE, make_changes_channel
from courseweb.errors import UpstreamError
from courseweb.progress.schemas import ChangeEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Seconds a single get_message() call may block before the loop re-checks
# whether the subscription was closed.
POLL_TIMEOUT = 1.0


@contextmanager
def redis_upstream(action: str) -> Iterator[None]:
    """Re-raise RedisError as UpstreamError, the way store.py does for SQLAlchemy."""
    try:
        yield
    except RedisError as exc:
        logger.error("Redis call failed during %s: %s", action, exc)
        raise UpstreamError(f"Failed to {action}") from exc


class FeedSubscription(Generic[T]):
    """
    Async iterator over one pub/sub subscription.

    `decode` turns a raw message payload into an item, or returns None to
    drop it (used for per-session filtering). close() is idempotent and ends
    the iteration.
    """

    def __init__(self, pubsub: Any, channels: list[str], decode: Callable[[str], Optional[T]]):
        self._pubsub = pubsub
        self._channels = channels
        self._decode = decode
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "FeedSubscription[T]":
        return self

    async def __anext__(self) -> T:
        while not self._closed:
            with redis_upstream("read change feed"):
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=POLL_TIMEOUT
                )
            if message is None or message.get("type") != "message":
                continue
            try:
                item = self._decode(message["data"])
            except ValueError as exc:
                logger.warning("Dropping undecodable message on %s: %s", message.get("channel"), exc)
                continue
            if item is not None:
                return item
        raise StopAsyncIteration

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(*self._channels)
        finally:
            await self._pubsub.aclose()
        logger.debug("Closed subscription channels=%s", self._channels)

    async def __aenter__(self) -> "FeedSubscription[T]":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class ChangeFeed:
    def __init__(self, redis: aioredis.Redis, table: str = PROGRESS_TABLE):
        self.redis = redis
        self.channel = make_changes_channel(table)

    async def publish(self, event: ChangeEvent) -> None:
        with redis_upstream("publish change event"):
            await self.redis.publish(self.channel, event.model_dump_json())
        logger.debug(
            "Published %s session_id=%s device=%s",
            event.event_type, event.session_id, event.device_fingerprint,
        )

    async def open(self, session_id: Optional[str] = None) -> FeedSubscription[ChangeEvent]:
        """Subscribe to the feed, optionally keeping only one session's events."""

        def decode(raw: str) -> Optional[ChangeEvent]:
            event = ChangeEvent.model_validate_json(raw)
            if session_id is not None and event.session_id != session_id:
                return None
            return event

        pubsub = self.redis.pubsub()
        with redis_upstream("subscribe to change feed"):
            await pubsub.subscribe(self.channel)
        return FeedSubscription(pubsub, [self.channel], decode)
