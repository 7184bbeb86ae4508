"""
models/progress_record.py — SQLAlchemy ORM model for course step progress.

Table: progress_tracking
At most one row per (session_id, device_fingerprint). Writes go through
store.upsert_progress(), a single INSERT ... ON CONFLICT DO UPDATE statement.
Rows are deleted on explicit reset.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from courseweb.database import Base


class ProgressRecordORM(Base):
    __tablename__ = "progress_tracking"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "device_fingerprint", name="uq_progress_session_device"
        ),
        CheckConstraint(
            "current_step >= 0 AND current_step <= total_steps",
            name="ck_progress_step_range",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    session_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    device_fingerprint: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
