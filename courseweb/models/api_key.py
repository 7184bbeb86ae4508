"""
models/api_key.py — SQLAlchemy ORM model for per-student API keys.

Table: api_keys
Looked up by the exact (student_id, name) pair. Populated out-of-band with
`python -m courseweb.api_keys.import_keys`.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from courseweb.database import Base


class ApiKeyORM(Base):
    __tablename__ = "api_keys"
    __table_args__ = (
        UniqueConstraint("student_id", "name", name="uq_api_keys_student_name"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    api_key: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
