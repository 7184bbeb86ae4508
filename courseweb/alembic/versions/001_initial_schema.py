"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000 UTC

Creates the three courseweb tables:
  - survey_submissions  one row per form submit, answers as JSON/JSONB
  - progress_tracking   one row per (session_id, device_fingerprint)
  - api_keys            one row per (student_id, name)
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONVariant = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "survey_submissions",
        sa.Column("id", sa.String(36), nullable=False, comment="UUID row identifier, store-assigned"),
        sa.Column("survey_id", sa.String(100), nullable=False),
        sa.Column(
            "device_fingerprint",
            sa.String(32),
            nullable=False,
            comment="Non-cryptographic device id derived from deviceInfo",
        ),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("ip_address", sa.String(255), nullable=True),
        sa.Column("screen_resolution", sa.String(32), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("language", sa.String(32), nullable=True),
        sa.Column("answers", JSONVariant, nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_survey_submissions_survey_id", "survey_submissions", ["survey_id"])
    op.create_index(
        "ix_survey_submissions_device_fingerprint", "survey_submissions", ["device_fingerprint"]
    )
    op.create_index(
        "ix_survey_submissions_survey_device",
        "survey_submissions",
        ["survey_id", "device_fingerprint"],
    )

    op.create_table(
        "progress_tracking",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("session_id", sa.String(100), nullable=False),
        sa.Column("device_fingerprint", sa.String(100), nullable=False),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("ip_address", sa.String(255), nullable=True),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_steps", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "device_fingerprint", name="uq_progress_session_device"),
        sa.CheckConstraint(
            "current_step >= 0 AND current_step <= total_steps",
            name="ck_progress_step_range",
        ),
    )
    op.create_index("ix_progress_tracking_session_id", "progress_tracking", ["session_id"])
    op.create_index(
        "ix_progress_tracking_device_fingerprint", "progress_tracking", ["device_fingerprint"]
    )
    op.create_index("ix_progress_tracking_updated_at", "progress_tracking", ["updated_at"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("student_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("api_key", sa.String(256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("student_id", "name", name="uq_api_keys_student_name"),
    )


def downgrade() -> None:
    op.drop_table("api_keys")
    op.drop_index("ix_progress_tracking_updated_at", table_name="progress_tracking")
    op.drop_index("ix_progress_tracking_device_fingerprint", table_name="progress_tracking")
    op.drop_index("ix_progress_tracking_session_id", table_name="progress_tracking")
    op.drop_table("progress_tracking")
    op.drop_index("ix_survey_submissions_survey_device", table_name="survey_submissions")
    op.drop_index("ix_survey_submissions_device_fingerprint", table_name="survey_submissions")
    op.drop_index("ix_survey_submissions_survey_id", table_name="survey_submissions")
    op.drop_table("survey_submissions")
