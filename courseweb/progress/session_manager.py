"""
session_manager.py — per-client progress session state.

A ProgressSessionManager owns one client's view of the progress feature:
  - which device and session it is (resolved once, cached)
  - the durable progress record for that (session, device)
  - the live online count from presence events
  - whether the realtime connection is up

Realtime input is message passing, not ambient callbacks: the transport
post()s PresenceEvent / ChangeEvent / ConnectionStatus messages, and whoever
owns the manager calls drain() on its own task to apply them. Observers
register with listen() and get a ProgressSnapshot after every applied message.

The backing store and the client-side cache are injected (ProgressBackend,
SessionCache) so the same manager runs against the database in the API and
against in-memory doubles in tests.
"""
from __future__ import annotations

import json
import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, List, Optional, Protocol, Union

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from courseweb import store
from courseweb.errors import ValidationError
from courseweb.identity.fingerprint import generate_random_id, new_session_id
from courseweb.progress.change_feed import ChangeFeed
from courseweb.progress.presence import PresenceState
from courseweb.progress.schemas import ChangeEvent, PresenceEvent, ProgressRecord
from courseweb.utils.datetime_helpers import ensure_utc

logger = logging.getLogger(__name__)

DEVICE_CACHE_KEY = "device_fingerprint"
SESSION_CACHE_KEY = "progress_session_id"
DEFAULT_TOTAL_STEPS = 5


class ConnectionStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


Message = Union[PresenceEvent, ChangeEvent, ConnectionStatus]


class ProgressSnapshot(BaseModel):
    session_id: Optional[str] = None
    device_fingerprint: Optional[str] = None
    connected: bool = False
    connecting: bool = True
    needs_refetch: bool = False
    online_count: int = 0
    progress: Optional[ProgressRecord] = None


# ---------------------------------------------------------------------------
# Backing store
# ---------------------------------------------------------------------------

class ProgressBackend(Protocol):
    async def latest_for_device(self, device_fingerprint: str) -> Optional[ProgressRecord]: ...

    async def get(self, session_id: str, device_fingerprint: str) -> Optional[ProgressRecord]: ...

    async def upsert(
        self,
        session_id: str,
        device_fingerprint: str,
        current_step: int,
        total_steps: int,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ) -> ProgressRecord: ...

    async def delete(self, session_id: str, device_fingerprint: str) -> bool: ...


class DatabaseProgressBackend:
    """
    ProgressBackend over store.py. Each write commits before its ChangeEvent
    is published, so subscribers never see an event for a row they cannot
    read yet.
    """

    def __init__(self, db: AsyncSession, feed: Optional[ChangeFeed] = None):
        self.db = db
        self.feed = feed

    async def latest_for_device(self, device_fingerprint: str) -> Optional[ProgressRecord]:
        row = await store.latest_progress_for_device(self.db, device_fingerprint)
        return ProgressRecord.model_validate(row) if row else None

    async def get(self, session_id: str, device_fingerprint: str) -> Optional[ProgressRecord]:
        row = await store.get_progress(self.db, session_id, device_fingerprint)
        return ProgressRecord.model_validate(row) if row else None

    async def upsert(
        self,
        session_id: str,
        device_fingerprint: str,
        current_step: int,
        total_steps: int,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ) -> ProgressRecord:
        written_at = ensure_utc(updated_at or datetime.now(timezone.utc))
        row = await store.upsert_progress(
            self.db,
            session_id=session_id,
            device_fingerprint=device_fingerprint,
            current_step=current_step,
            total_steps=total_steps,
            user_agent=user_agent,
            ip_address=ip_address,
            updated_at=written_at,
        )
        record = ProgressRecord.model_validate(row)
        await self.db.commit()
        if record.updated_at != written_at:
            # A newer write already won; the stored row did not change.
            logger.info(
                "Stale progress write dropped session_id=%s device=%s",
                session_id, device_fingerprint,
            )
            return record
        if self.feed is not None:
            event_type = "INSERT" if record.created_at == record.updated_at else "UPDATE"
            await self.feed.publish(ChangeEvent(
                event_type=event_type,
                session_id=session_id,
                device_fingerprint=device_fingerprint,
                new=record,
            ))
        return record

    async def delete(self, session_id: str, device_fingerprint: str) -> bool:
        old = await self.get(session_id, device_fingerprint)
        deleted = await store.delete_progress(self.db, session_id, device_fingerprint)
        await self.db.commit()
        if deleted and self.feed is not None:
            await self.feed.publish(ChangeEvent(
                event_type="DELETE",
                session_id=session_id,
                device_fingerprint=device_fingerprint,
                old=old,
            ))
        return deleted


# ---------------------------------------------------------------------------
# Client-side cache
# ---------------------------------------------------------------------------

class SessionCache(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryCache:
    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = {k: v for k, v in (initial or {}).items() if v}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileCache:
    """
    Cache persisted as a flat JSON object. An unreadable or corrupt file is
    treated as empty: cached ids are a convenience, not state worth failing on.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.debug("Ignoring session cache %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) and value else None

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        try:
            self.path.write_text(json.dumps(data), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write session cache %s: %s", self.path, exc)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class Subscription:
    def __init__(self, manager: "ProgressSessionManager", callback: Callable[[ProgressSnapshot], Any]):
        self._manager = manager
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._manager._listeners.remove(self._callback)


class ProgressSessionManager:
    def __init__(
        self,
        backend: ProgressBackend,
        cache: SessionCache,
        default_total_steps: int = DEFAULT_TOTAL_STEPS,
    ):
        if default_total_steps < 1:
            raise ValueError("default_total_steps must be >= 1")
        self.backend = backend
        self.cache = cache
        self.default_total_steps = default_total_steps

        self.device_fingerprint: Optional[str] = None
        self.session_id: Optional[str] = None
        self.progress: Optional[ProgressRecord] = None
        self.presence = PresenceState()
        self.online_count = 0
        self.connected = False
        self.connecting = True
        self.needs_refetch = False

        self._inbox: Deque[Message] = deque()
        self._listeners: List[Callable[[ProgressSnapshot], Any]] = []

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def ensure_device(self) -> str:
        fingerprint = self.cache.get(DEVICE_CACHE_KEY)
        if not fingerprint:
            fingerprint = generate_random_id()
            self.cache.set(DEVICE_CACHE_KEY, fingerprint)
            logger.info("Generated device fingerprint device=%s", fingerprint)
        self.device_fingerprint = fingerprint
        return fingerprint

    async def resolve_session(self, device_id: str) -> str:
        """
        Cached session id, else the session of the device's most recently
        updated record, else a new one. The answer is cached, so repeated
        calls return the same id.
        """
        self.device_fingerprint = device_id
        session_id = self.cache.get(SESSION_CACHE_KEY)
        if not session_id:
            latest = await self.backend.latest_for_device(device_id)
            if latest is not None:
                session_id = latest.session_id
                logger.info("Resumed session session_id=%s device=%s", session_id, device_id)
            else:
                session_id = new_session_id()
                logger.info("Started session session_id=%s device=%s", session_id, device_id)
            self.cache.set(SESSION_CACHE_KEY, session_id)
        self.session_id = session_id
        return session_id

    # ------------------------------------------------------------------
    # Durable progress
    # ------------------------------------------------------------------

    async def record_step(
        self,
        session_id: str,
        device_id: str,
        step: int,
        total_steps: Optional[int] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ) -> ProgressRecord:
        """
        Upsert progress for (session_id, device_id). step=0 clears progress
        while keeping the row.
        """
        if total_steps is None:
            total_steps = await self._current_total(session_id, device_id)
        if total_steps < 1:
            raise ValidationError("total_steps must be at least 1")
        if step < 0 or step > total_steps:
            raise ValidationError(f"step must be between 0 and {total_steps}")

        record = await self.backend.upsert(
            session_id,
            device_id,
            current_step=step,
            total_steps=total_steps,
            user_agent=user_agent,
            ip_address=ip_address,
            updated_at=updated_at or datetime.now(timezone.utc),
        )
        self.progress = record
        self._notify()
        return record

    async def reset(self, session_id: str, device_id: str) -> None:
        await self.backend.delete(session_id, device_id)
        self.progress = None
        self._notify()

    async def refresh(self) -> Optional[ProgressRecord]:
        """Re-read the record for the current session and clear needs_refetch."""
        if self.session_id and self.device_fingerprint:
            self.progress = await self.backend.get(self.session_id, self.device_fingerprint)
        self.needs_refetch = False
        self._notify()
        return self.progress

    async def _current_total(self, session_id: str, device_id: str) -> int:
        current = self.progress
        if current is None or (current.session_id, current.device_fingerprint) != (session_id, device_id):
            current = await self.backend.get(session_id, device_id)
        return current.total_steps if current is not None else self.default_total_steps

    # ------------------------------------------------------------------
    # Realtime signals
    # ------------------------------------------------------------------

    def handle_presence(self, event: PresenceEvent) -> int:
        self.online_count = self.presence.apply(event)
        return self.online_count

    def handle_change(self, event: ChangeEvent) -> None:
        if self.session_id is None or event.session_id != self.session_id:
            return
        if event.event_type in ("INSERT", "UPDATE"):
            self.progress = event.new
        else:
            self.progress = None

    def set_status(self, status: Union[str, ConnectionStatus]) -> None:
        status = ConnectionStatus(status)
        self.connecting = False
        if status is ConnectionStatus.SUBSCRIBED:
            self.connected = True
        else:
            self.connected = False
            self.needs_refetch = True
            logger.warning("Realtime channel %s session_id=%s", status.value, self.session_id)

    # ------------------------------------------------------------------
    # Message passing
    # ------------------------------------------------------------------

    def post(self, message: Message) -> None:
        self._inbox.append(message)

    def drain(self) -> int:
        """Apply every queued message on the caller's task. Returns how many ran."""
        handled = 0
        while self._inbox:
            message = self._inbox.popleft()
            if isinstance(message, PresenceEvent):
                self.handle_presence(message)
            elif isinstance(message, ChangeEvent):
                self.handle_change(message)
            else:
                self.set_status(message)
            handled += 1
            self._notify()
        return handled

    def listen(self, callback: Callable[[ProgressSnapshot], Any]) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self, callback)

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            session_id=self.session_id,
            device_fingerprint=self.device_fingerprint,
            connected=self.connected,
            connecting=self.connecting,
            needs_refetch=self.needs_refetch,
            online_count=self.online_count,
            progress=self.progress,
        )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for callback in list(self._listeners):
            callback(snapshot)
