"""
store.py tests against SQLite (aiosqlite). Each test gets a fresh schema
from the engine fixture in conftest.py.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from courseweb import store
from courseweb.models.progress_record import ProgressRecordORM
from courseweb.utils.datetime_helpers import ensure_utc

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _row_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(ProgressRecordORM))
    return result.scalar_one()


# ---------------------------------------------------------------------------
# Progress upsert
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upsert_same_key_keeps_one_row_with_latest_step(db_session) -> None:
    await store.upsert_progress(db_session, "s1", "dev", 1, 5, updated_at=T0)
    row = await store.upsert_progress(db_session, "s1", "dev", 3, 5, updated_at=T0 + timedelta(seconds=1))
    await db_session.commit()

    assert row.current_step == 3
    assert await _row_count(db_session) == 1


@pytest.mark.asyncio
async def test_older_write_does_not_overwrite_newer(db_session) -> None:
    await store.upsert_progress(db_session, "s1", "dev", 4, 5, updated_at=T0 + timedelta(minutes=1))
    row = await store.upsert_progress(db_session, "s1", "dev", 2, 5, updated_at=T0)

    assert row.current_step == 4
    assert ensure_utc(row.updated_at) == T0 + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_upsert_keeps_created_at_and_known_user_agent(db_session) -> None:
    first = await store.upsert_progress(db_session, "s1", "dev", 1, 5, user_agent="UA", updated_at=T0)
    created = ensure_utc(first.created_at)
    row = await store.upsert_progress(db_session, "s1", "dev", 2, 5, updated_at=T0 + timedelta(seconds=5))

    assert ensure_utc(row.created_at) == created
    assert row.user_agent == "UA"


@pytest.mark.asyncio
async def test_distinct_keys_get_distinct_rows(db_session) -> None:
    await store.upsert_progress(db_session, "s1", "devA", 1, 5)
    await store.upsert_progress(db_session, "s1", "devB", 1, 5)
    await store.upsert_progress(db_session, "s2", "devA", 1, 5)
    assert await _row_count(db_session) == 3


@pytest.mark.asyncio
async def test_step_zero_keeps_the_row(db_session) -> None:
    await store.upsert_progress(db_session, "s1", "dev", 3, 5, updated_at=T0)
    row = await store.upsert_progress(db_session, "s1", "dev", 0, 5, updated_at=T0 + timedelta(seconds=1))
    assert row.current_step == 0
    assert await _row_count(db_session) == 1


@pytest.mark.asyncio
async def test_latest_progress_for_device_picks_most_recent_session(db_session) -> None:
    await store.upsert_progress(db_session, "old", "dev", 1, 5, updated_at=T0)
    await store.upsert_progress(db_session, "new", "dev", 2, 5, updated_at=T0 + timedelta(hours=1))
    await store.upsert_progress(db_session, "other", "dev2", 2, 5, updated_at=T0 + timedelta(hours=2))

    latest = await store.latest_progress_for_device(db_session, "dev")
    assert latest is not None and latest.session_id == "new"
    assert await store.latest_progress_for_device(db_session, "nobody") is None


@pytest.mark.asyncio
async def test_delete_progress(db_session) -> None:
    await store.upsert_progress(db_session, "s1", "dev", 2, 5)
    assert await store.delete_progress(db_session, "s1", "dev") is True
    assert await store.get_progress(db_session, "s1", "dev") is None
    assert await store.delete_progress(db_session, "s1", "dev") is False


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submissions_listed_newest_first_per_survey(db_session) -> None:
    first = await store.save_submission(db_session, "week-1", "dev", {"q": 1})
    second = await store.save_submission(db_session, "week-1", "dev", {"q": 2})
    await store.save_submission(db_session, "week-2", "dev", {"q": 3})
    first.submitted_at = T0
    second.submitted_at = T0 + timedelta(minutes=1)
    await db_session.flush()

    rows = await store.list_submissions(db_session, "week-1")
    assert [r.id for r in rows] == [second.id, first.id]
    assert rows[0].answers == {"q": 2}


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_api_key_upsert_replaces_key(db_session) -> None:
    await store.upsert_api_key(db_session, "2024001", "Li Lei", "sk-old")
    await store.upsert_api_key(db_session, "2024001", "Li Lei", "sk-new")

    row = await store.find_api_key(db_session, "2024001", "Li Lei")
    assert row is not None
    await db_session.refresh(row)
    assert row.api_key == "sk-new"
    assert await store.find_api_key(db_session, "2024001", "Han Meimei") is None
