"""
stats.py — admin view of progress across devices.

users_progress holds one entry per device: its most recently updated record
over all sessions. total_connections counts those devices; online_connections
is the live presence count.
"""
from collections.abc import Iterable
from typing import Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from courseweb.progress.presence import RedisPresence
from courseweb.progress.schemas import ProgressRecord, ProgressStats, UserProgress
from courseweb.store import list_progress


def latest_per_device(records: Iterable[ProgressRecord]) -> List[UserProgress]:
    latest: Dict[str, ProgressRecord] = {}
    for record in records:
        prev = latest.get(record.device_fingerprint)
        if prev is None or record.updated_at > prev.updated_at:
            latest[record.device_fingerprint] = record
    return [
        UserProgress(
            device_fingerprint=r.device_fingerprint,
            session_id=r.session_id,
            user_agent=r.user_agent,
            current_step=r.current_step,
            total_steps=r.total_steps,
            updated_at=r.updated_at,
        )
        for r in latest.values()
    ]


async def build_stats(db: AsyncSession, presence: RedisPresence) -> ProgressStats:
    rows = await list_progress(db)
    users = latest_per_device(ProgressRecord.model_validate(row) for row in rows)
    return ProgressStats(
        total_connections=len(users),
        online_connections=await presence.count(),
        users_progress=users,
    )
