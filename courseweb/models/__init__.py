"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from courseweb.models.api_key import ApiKeyORM
from courseweb.models.progress_record import ProgressRecordORM
from courseweb.models.survey_submission import SurveySubmissionORM

__all__ = ["SurveySubmissionORM", "ProgressRecordORM", "ApiKeyORM"]
