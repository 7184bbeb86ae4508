"""
models/survey_submission.py — SQLAlchemy ORM model for survey submissions.

Table: survey_submissions
One row per form submit. Rows are never updated after insert.
answers is stored as a JSON blob (JSONB on PostgreSQL) so free-form survey
answers never appear as queryable columns.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from courseweb.database import Base

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class SurveySubmissionORM(Base):
    """
    ORM model for a single survey submission.

    device_fingerprint: non-cryptographic device id derived from deviceInfo.
                        Indexed together with survey_id for per-device grouping.
    """
    __tablename__ = "survey_submissions"
    __table_args__ = (
        Index("ix_survey_submissions_survey_device", "survey_id", "device_fingerprint"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier, store-assigned",
    )
    survey_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    device_fingerprint: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    screen_resolution: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    answers: Mapped[dict] = mapped_column(JSONVariant, nullable=False, default=dict)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
