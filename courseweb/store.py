"""
store.py — data access facade for courseweb.

All routes and the progress backend go through these functions; nothing
else builds SQLAlchemy queries.

Design principles:
  - All functions are async and accept an AsyncSession parameter
  - Writes use flush(), not commit(); the caller or get_db() commits
  - SQLAlchemyError is re-raised as UpstreamError so handlers map it to 500
  - Logs identifiers only (survey_id, session_id, fingerprint), never answers
    or API keys
"""
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from courseweb.errors import UpstreamError
from courseweb.models.api_key import ApiKeyORM
from courseweb.models.progress_record import ProgressRecordORM
from courseweb.models.survey_submission import SurveySubmissionORM

logger = logging.getLogger(__name__)


@contextmanager
def _upstream(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Database call failed during %s: %s", action, exc)
        raise UpstreamError(f"Failed to {action}") from exc


def _dialect_insert(db: AsyncSession):
    """Pick the dialect-specific insert() that supports ON CONFLICT."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


# ---------------------------------------------------------------------------
# Survey submission operations
# ---------------------------------------------------------------------------

async def save_submission(
    db: AsyncSession,
    survey_id: str,
    device_fingerprint: str,
    answers: dict[str, Any],
    user_agent: Optional[str] = None,
    screen_resolution: Optional[str] = None,
    timezone_name: Optional[str] = None,
    language: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> SurveySubmissionORM:
    """
    Persist one survey submission and return it with its store-assigned id
    and submitted_at.
    """
    now = datetime.now(timezone.utc)
    orm = SurveySubmissionORM(
        id=str(uuid.uuid4()),
        survey_id=survey_id,
        device_fingerprint=device_fingerprint,
        user_agent=user_agent,
        ip_address=ip_address,
        screen_resolution=screen_resolution,
        timezone=timezone_name,
        language=language,
        answers=answers,
        submitted_at=now,
        created_at=now,
        updated_at=now,
    )
    with _upstream("save submission"):
        db.add(orm)
        await db.flush()
    logger.info(
        "Saved submission id=%s survey_id=%s device=%s",
        orm.id, survey_id, device_fingerprint,
    )
    return orm


async def list_submissions(
    db: AsyncSession,
    survey_id: str,
) -> list[SurveySubmissionORM]:
    """All submissions for a survey, newest first."""
    with _upstream("query submissions"):
        result = await db.execute(
            select(SurveySubmissionORM)
            .where(SurveySubmissionORM.survey_id == survey_id)
            .order_by(SurveySubmissionORM.submitted_at.desc())
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Progress operations
# ---------------------------------------------------------------------------

async def upsert_progress(
    db: AsyncSession,
    session_id: str,
    device_fingerprint: str,
    current_step: int,
    total_steps: int,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    updated_at: Optional[datetime] = None,
) -> ProgressRecordORM:
    """
    Insert-or-replace the progress row for (session_id, device_fingerprint).

    One INSERT ... ON CONFLICT DO UPDATE statement, so concurrent writers never
    produce a second row. The conflict update only applies when the incoming
    updated_at is not older than the stored one (last write wins).
    Returns the row as stored after the statement.
    """
    now = updated_at or datetime.now(timezone.utc)
    insert = _dialect_insert(db)
    stmt = insert(ProgressRecordORM).values(
        id=str(uuid.uuid4()),
        session_id=session_id,
        device_fingerprint=device_fingerprint,
        user_agent=user_agent,
        ip_address=ip_address,
        current_step=current_step,
        total_steps=total_steps,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["session_id", "device_fingerprint"],
        set_={
            "current_step": stmt.excluded.current_step,
            "total_steps": stmt.excluded.total_steps,
            "user_agent": func.coalesce(stmt.excluded.user_agent, ProgressRecordORM.user_agent),
            "ip_address": func.coalesce(stmt.excluded.ip_address, ProgressRecordORM.ip_address),
            "updated_at": stmt.excluded.updated_at,
        },
        where=ProgressRecordORM.updated_at <= stmt.excluded.updated_at,
    )
    with _upstream("save progress"):
        await db.execute(stmt)
        await db.flush()
        row = await get_progress(db, session_id, device_fingerprint)
    if row is None:
        raise UpstreamError("Failed to save progress")
    logger.info(
        "Upserted progress session_id=%s device=%s step=%d/%d",
        session_id, device_fingerprint, row.current_step, row.total_steps,
    )
    return row


async def get_progress(
    db: AsyncSession,
    session_id: str,
    device_fingerprint: str,
) -> Optional[ProgressRecordORM]:
    with _upstream("query progress"):
        result = await db.execute(
            select(ProgressRecordORM)
            .where(
                ProgressRecordORM.session_id == session_id,
                ProgressRecordORM.device_fingerprint == device_fingerprint,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


async def latest_progress_for_device(
    db: AsyncSession,
    device_fingerprint: str,
) -> Optional[ProgressRecordORM]:
    """Most recently updated row for a device across all its sessions."""
    with _upstream("query progress"):
        result = await db.execute(
            select(ProgressRecordORM)
            .where(ProgressRecordORM.device_fingerprint == device_fingerprint)
            .order_by(ProgressRecordORM.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


async def delete_progress(
    db: AsyncSession,
    session_id: str,
    device_fingerprint: str,
) -> bool:
    """Delete the row for the key. Returns False when there was nothing to delete."""
    with _upstream("reset progress"):
        result = await db.execute(
            delete(ProgressRecordORM).where(
                ProgressRecordORM.session_id == session_id,
                ProgressRecordORM.device_fingerprint == device_fingerprint,
            )
        )
        await db.flush()
    deleted = (result.rowcount or 0) > 0
    logger.info(
        "Reset progress session_id=%s device=%s deleted=%s",
        session_id, device_fingerprint, deleted,
    )
    return deleted


async def list_progress(db: AsyncSession) -> list[ProgressRecordORM]:
    with _upstream("query progress"):
        result = await db.execute(select(ProgressRecordORM))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# API key operations
# ---------------------------------------------------------------------------

async def find_api_key(
    db: AsyncSession,
    student_id: str,
    name: str,
) -> Optional[ApiKeyORM]:
    """Exact match on (student_id, name). Returns None when no row matches."""
    with _upstream("query api key"):
        result = await db.execute(
            select(ApiKeyORM).where(
                ApiKeyORM.student_id == student_id,
                ApiKeyORM.name == name,
            )
        )
        return result.scalar_one_or_none()


async def upsert_api_key(
    db: AsyncSession,
    student_id: str,
    name: str,
    api_key: str,
) -> None:
    """Insert or replace the key for (student_id, name)."""
    insert = _dialect_insert(db)
    stmt = insert(ApiKeyORM).values(
        id=str(uuid.uuid4()),
        student_id=student_id,
        name=name,
        api_key=api_key,
        created_at=datetime.now(timezone.utc),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["student_id", "name"],
        set_={"api_key": stmt.excluded.api_key},
    )
    with _upstream("save api key"):
        await db.execute(stmt)
        await db.flush()
    logger.info("Upserted api key student_id=%s", student_id)
