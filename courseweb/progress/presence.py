"""
presence.py — who is connected to the progress channel right now.

PresenceState is the pure membership set a client rebuilds from sync / join /
leave events. RedisPresence is the server side: each open WebSocket is one
connection entry under its session key, and the online count is the number
of keys with at least one live entry.

Redis layout (see cache.py):
  presence:{channel}:conns   zset  "{key}|{connection_id}" scored by expiry time
  presence:{channel}:meta    hash  "{key}|{connection_id}" → JSON metadata
  presence:{channel}:events  join / leave PresenceEvent messages
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable, Mapping
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as aioredis

from courseweb.cache import (
    make_presence_conns_key,
    make_presence_events_channel,
    make_presence_meta_key,
)
from courseweb.progress.change_feed import FeedSubscription, redis_upstream
from courseweb.progress.schemas import PresenceEvent

logger = logging.getLogger(__name__)

_MEMBER_SEPARATOR = "|"


def new_connection_id() -> str:
    return uuid.uuid4().hex


def _member(key: str, connection_id: str) -> str:
    return f"{key}{_MEMBER_SEPARATOR}{connection_id}"


def _key_of(member: str) -> str:
    # Connection ids never contain the separator; session keys might.
    return member.rpartition(_MEMBER_SEPARATOR)[0]


class PresenceState:
    """Membership keyed by presence key (the session id)."""

    def __init__(self) -> None:
        self._members: Dict[str, List[Dict[str, Any]]] = {}

    def sync(self, state: Mapping[str, Iterable[Dict[str, Any]]]) -> None:
        self._members = {key: list(metas) for key, metas in state.items()}

    def join(self, key: str, metas: Iterable[Dict[str, Any]] = ()) -> None:
        self._members.setdefault(key, []).extend(metas)

    def leave(self, key: str, metas: Iterable[Dict[str, Any]] = ()) -> None:
        """
        Drop the given metadata entries; the key goes away once none remain.
        Leaving without metas removes the key outright.
        """
        current = self._members.get(key)
        if current is None:
            return
        metas = list(metas)
        if metas:
            for meta in metas:
                if meta in current:
                    current.remove(meta)
        if not metas or not current:
            del self._members[key]

    def apply(self, event: PresenceEvent) -> int:
        if event.event == "sync":
            self.sync(event.state)
        elif event.event == "join" and event.key is not None:
            self.join(event.key, event.metas)
        elif event.event == "leave" and event.key is not None:
            self.leave(event.key, event.metas)
        return self.count

    @property
    def keys(self) -> List[str]:
        return list(self._members)

    @property
    def count(self) -> int:
        return len(self._members)


class RedisPresence:
    """
    Server-side presence. Every open socket is its own connection entry, so
    two tabs on one session are two entries under one presence key, and
    count() is the number of distinct keys with a live entry.

    An entry's score is its expiry time. The socket that owns it calls
    heartbeat() to push the expiry forward; entries left behind by a worker
    that died are removed by sweep(), which count() and members() run first.
    Each write goes through one MULTI pipeline so an entry and its metadata
    are added and removed together.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str,
        ttl: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.channel = channel
        self.ttl = ttl
        self._clock = clock
        self._conns_key = make_presence_conns_key(channel)
        self._meta_key = make_presence_meta_key(channel)
        self._events_channel = make_presence_events_channel(channel)

    async def track(
        self,
        key: str,
        meta: Optional[Dict[str, Any]] = None,
        connection_id: Optional[str] = None,
    ) -> str:
        """Add one connection under key and publish its join. Returns the connection id."""
        meta = meta or {}
        connection_id = connection_id or new_connection_id()
        member = _member(key, connection_id)
        with redis_upstream("track presence"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self._conns_key, {member: self._clock() + self.ttl})
                pipe.hset(self._meta_key, member, json.dumps(meta))
                await pipe.execute()
            await self._publish(PresenceEvent(event="join", key=key, metas=[meta]))
        logger.info("Presence join channel=%s key=%s connection=%s", self.channel, key, connection_id)
        return connection_id

    async def heartbeat(
        self,
        key: str,
        connection_id: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Extend the connection's expiry; re-track it if a sweep already removed it."""
        member = _member(key, connection_id)
        with redis_upstream("refresh presence"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self._conns_key, {member: self._clock() + self.ttl}, xx=True)
                pipe.zscore(self._conns_key, member)
                _, score = await pipe.execute()
        if score is None:
            logger.warning("Presence entry expired while open key=%s connection=%s", key, connection_id)
            await self.track(key, meta, connection_id)

    async def untrack(self, key: str, connection_id: str) -> bool:
        """
        Remove one connection and publish its leave. Safe to call more than
        once; returns False when the entry was already gone.
        """
        member = _member(key, connection_id)
        with redis_upstream("untrack presence"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hget(self._meta_key, member)
                pipe.zrem(self._conns_key, member)
                pipe.hdel(self._meta_key, member)
                raw, removed, _ = await pipe.execute()
            if not removed:
                return False
            metas = [json.loads(raw)] if raw else []
            await self._publish(PresenceEvent(event="leave", key=key, metas=metas))
        logger.info("Presence leave channel=%s key=%s connection=%s", self.channel, key, connection_id)
        return True

    async def sweep(self) -> int:
        """Remove expired connections, publishing a leave for each. Returns how many."""
        with redis_upstream("sweep presence"):
            return await self._sweep()

    async def members(self) -> Dict[str, Dict[str, Any]]:
        """Live keys mapped to the metadata of their most recently refreshed connection."""
        with redis_upstream("read presence"):
            await self._sweep()
            live = await self._live_members()
            raws = await self.redis.hmget(self._meta_key, live) if live else []
        result: Dict[str, Dict[str, Any]] = {}
        for member, raw in zip(live, raws):
            result[_key_of(member)] = json.loads(raw) if raw else {}
        return result

    async def count(self) -> int:
        with redis_upstream("count presence"):
            await self._sweep()
            live = await self._live_members()
        return len({_key_of(member) for member in live})

    async def open_events(self) -> FeedSubscription[PresenceEvent]:
        pubsub = self.redis.pubsub()
        with redis_upstream("subscribe to presence"):
            await pubsub.subscribe(self._events_channel)
        return FeedSubscription(pubsub, [self._events_channel], PresenceEvent.model_validate_json)

    async def _live_members(self) -> List[str]:
        # Ascending by expiry, so the last entry per key is the freshest one.
        return list(await self.redis.zrangebyscore(self._conns_key, self._clock(), "+inf"))

    async def _sweep(self) -> int:
        now = self._clock()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrangebyscore(self._conns_key, "-inf", now)
            pipe.zremrangebyscore(self._conns_key, "-inf", now)
            expired, _ = await pipe.execute()
        if not expired:
            return 0
        # Only the sweeper whose MULTI removed these entries gets here for them.
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hmget(self._meta_key, expired)
            pipe.hdel(self._meta_key, *expired)
            raws, _ = await pipe.execute()
        for member, raw in zip(expired, raws):
            metas = [json.loads(raw)] if raw else []
            await self._publish(PresenceEvent(event="leave", key=_key_of(member), metas=metas))
        logger.warning("Presence swept %d expired connection(s) channel=%s", len(expired), self.channel)
        return len(expired)

    async def _publish(self, event: PresenceEvent) -> None:
        await self.redis.publish(self._events_channel, event.model_dump_json())
