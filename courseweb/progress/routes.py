"""
routes.py — progress tracking endpoints.

POST   /api/progress/session     resolve (device, session) and return stored progress
PUT    /api/progress/step        record a completed step (step=0 clears)
DELETE /api/progress             delete the row for (session, device)
GET    /api/progress/stats       admin: latest progress per device + online count
WS     /api/progress/live        presence for one session + its change events
WS     /api/progress/stats/live  admin: online counts and debounced stats snapshots
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query, Request, Response, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.websockets import WebSocketState

from courseweb.auth.admin_gate import authorize_token, get_token_codec, require_admin
from courseweb.cache import get_redis
from courseweb.config import settings
from courseweb.database import AsyncSessionLocal, get_db
from courseweb.errors import AppError, Unauthorized, ValidationError
from courseweb.identity.fingerprint import client_ip
from courseweb.progress.change_feed import ChangeFeed
from courseweb.progress.debounce import Debouncer
from courseweb.progress.presence import RedisPresence, new_connection_id
from courseweb.progress.schemas import (
    ProgressRecord,
    ProgressStats,
    SessionRequest,
    SessionResponse,
    StepRequest,
)
from courseweb.progress.session_manager import (
    DEVICE_CACHE_KEY,
    SESSION_CACHE_KEY,
    DatabaseProgressBackend,
    MemoryCache,
    ProgressSessionManager,
)
from courseweb.progress.stats import build_stats

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/progress", tags=["Progress"])

# WebSocket close codes
WS_UNAUTHORIZED = 4401
WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_progress_backend(
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> DatabaseProgressBackend:
    return DatabaseProgressBackend(db, ChangeFeed(redis))


def get_presence(redis: aioredis.Redis = Depends(get_redis)) -> RedisPresence:
    return RedisPresence(redis, settings.presence_channel, ttl=settings.presence_ttl_seconds)


def _manager(
    backend: DatabaseProgressBackend,
    device_fingerprint: Optional[str] = None,
    session_id: Optional[str] = None,
) -> ProgressSessionManager:
    cache = MemoryCache({DEVICE_CACHE_KEY: device_fingerprint, SESSION_CACHE_KEY: session_id})
    return ProgressSessionManager(
        backend, cache, default_total_steps=settings.progress_default_total_steps
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@router.post("/session", response_model=SessionResponse)
async def open_session(
    body: SessionRequest,
    backend: DatabaseProgressBackend = Depends(get_progress_backend),
) -> SessionResponse:
    """
    The client sends whatever ids it has cached. Missing ones are resolved
    (device: new random id; session: latest for the device, else new) and
    returned for the client to cache.
    """
    manager = _manager(backend, body.device_fingerprint, body.session_id)
    device_fingerprint = manager.ensure_device()
    session_id = await manager.resolve_session(device_fingerprint)
    progress = await manager.refresh()
    return SessionResponse(
        session_id=session_id,
        device_fingerprint=device_fingerprint,
        progress=progress,
    )


@router.put("/step", response_model=ProgressRecord)
async def record_step(
    body: StepRequest,
    request: Request,
    backend: DatabaseProgressBackend = Depends(get_progress_backend),
) -> ProgressRecord:
    manager = _manager(backend, body.device_fingerprint, body.session_id)
    peer = request.client.host if request.client else None
    return await manager.record_step(
        body.session_id,
        body.device_fingerprint,
        body.step,
        total_steps=body.total_steps,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request.headers, peer),
    )


@router.delete("", status_code=204)
async def reset_progress(
    session_id: Optional[str] = Query(default=None),
    device_fingerprint: Optional[str] = Query(default=None),
    backend: DatabaseProgressBackend = Depends(get_progress_backend),
) -> Response:
    if not session_id or not device_fingerprint:
        raise ValidationError("Missing required parameters: session_id and device_fingerprint")
    manager = _manager(backend, device_fingerprint, session_id)
    await manager.reset(session_id, device_fingerprint)
    return Response(status_code=204)


@router.get("/stats", response_model=ProgressStats)
async def progress_stats(
    claims: dict[str, Any] = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    presence: RedisPresence = Depends(get_presence),
) -> ProgressStats:
    stats = await build_stats(db, presence)
    logger.info(
        "Progress stats devices=%d online=%d",
        stats.total_connections, stats.online_connections,
    )
    return stats


# ---------------------------------------------------------------------------
# WebSockets
# ---------------------------------------------------------------------------

async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Clients are not expected to send anything; this only notices the close.
    while True:
        await websocket.receive_text()


async def _run_until_first_done(*coros) -> None:
    tasks = [asyncio.create_task(c) for c in coros]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@router.websocket("/live")
async def progress_live(
    websocket: WebSocket,
    session_id: Optional[str] = Query(default=None),
    device_fingerprint: Optional[str] = Query(default=None),
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """
    Tracks the session in presence for as long as the socket is open and
    forwards change events for that session as {"type": "progress", ...}.
    """
    await websocket.accept()
    if not session_id or not device_fingerprint:
        await websocket.close(code=WS_POLICY_VIOLATION, reason="session_id and device_fingerprint required")
        return

    presence = get_presence(redis)
    feed = ChangeFeed(redis)
    connection_id = new_connection_id()
    meta = {
        "session_id": session_id,
        "device_fingerprint": device_fingerprint,
        "online_at": datetime.now(timezone.utc).isoformat(),
        "user_agent": websocket.headers.get("user-agent"),
    }

    subscription = None
    try:
        await presence.track(session_id, meta, connection_id=connection_id)
        subscription = await feed.open(session_id=session_id)
        await websocket.send_json({"type": "status", "status": "SUBSCRIBED"})

        async def relay() -> None:
            async for event in subscription:
                progress = event.new.model_dump(mode="json") if event.new else None
                await websocket.send_json({
                    "type": "progress",
                    "event_type": event.event_type,
                    "progress": progress,
                })

        async def keep_alive() -> None:
            while True:
                await asyncio.sleep(presence.ttl / 3)
                await presence.heartbeat(session_id, connection_id, meta)

        await _run_until_first_done(relay(), keep_alive(), _wait_for_disconnect(websocket))
    except WebSocketDisconnect:
        pass
    except AppError as exc:
        logger.error("Live progress socket failed session_id=%s: %s", session_id, exc.message)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=WS_INTERNAL_ERROR)
    finally:
        if subscription is not None:
            await subscription.close()
        try:
            await presence.untrack(session_id, connection_id)
        except AppError as exc:
            logger.error(
                "Presence cleanup failed session_id=%s: %s; entry expires in %ss",
                session_id, exc.message, presence.ttl,
            )
        logger.info("Live progress socket closed session_id=%s", session_id)


@router.websocket("/stats/live")
async def progress_stats_live(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """
    Admin stream. Browsers cannot set headers on a WebSocket, so the bearer
    token travels as ?token=. Presence changes push {"type": "online"} right
    away; row changes are debounced into one {"type": "stats"} refetch.
    """
    await websocket.accept()
    try:
        if not token:
            raise Unauthorized("Missing bearer token")
        authorize_token(token, get_token_codec())
    except Unauthorized:
        await websocket.close(code=WS_UNAUTHORIZED, reason="Unauthorized")
        logger.info("Stats socket rejected: invalid token")
        return
    except AppError as exc:
        logger.error("Stats socket unavailable: %s", exc.message)
        await websocket.close(code=WS_INTERNAL_ERROR)
        return

    presence = get_presence(redis)
    feed = ChangeFeed(redis)

    async def push_stats() -> None:
        async with AsyncSessionLocal() as db:
            stats = await build_stats(db, presence)
        await websocket.send_json({"type": "stats", **stats.model_dump(mode="json")})

    debouncer = Debouncer(settings.stats_debounce_seconds, push_stats)
    presence_events = None
    changes = None
    try:
        await push_stats()
        presence_events = await presence.open_events()
        changes = await feed.open()

        async def relay_presence() -> None:
            async for _ in presence_events:
                await websocket.send_json({"type": "online", "online_connections": await presence.count()})

        async def relay_changes() -> None:
            async for _ in changes:
                debouncer.trigger()

        await _run_until_first_done(
            relay_presence(), relay_changes(), _wait_for_disconnect(websocket)
        )
    except WebSocketDisconnect:
        pass
    except AppError as exc:
        logger.error("Stats socket failed: %s", exc.message)
    finally:
        debouncer.cancel()
        for subscription in (presence_events, changes):
            if subscription is not None:
                await subscription.close()
        logger.info("Stats socket closed")
