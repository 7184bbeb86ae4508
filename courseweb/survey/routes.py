"""
routes.py — survey HTTP endpoints.

POST /api/surveys/submit   store one submission, fingerprinting the device
GET  /api/surveys/results  admin-only aggregated statistics for one survey
"""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from courseweb.auth.admin_gate import require_admin
from courseweb.database import get_db
from courseweb.errors import ValidationError
from courseweb.identity.fingerprint import client_ip
from courseweb.identity.schemas import DeviceInfo
from courseweb.store import list_submissions, save_submission
from courseweb.survey.aggregator import aggregate
from courseweb.survey.schemas import (
    SubmissionRecord,
    SubmitSurveyRequest,
    SubmitSurveyResponse,
    SurveyResultsResponse,
    SurveyStatistics,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/surveys", tags=["Surveys"])


@router.post("/submit", response_model=SubmitSurveyResponse)
async def submit_survey(
    body: SubmitSurveyRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SubmitSurveyResponse:
    """
    Persist a survey submission.

    The device fingerprint is derived server-side from deviceInfo so clients
    cannot pick their own grouping key. Returns the store-assigned id and
    timestamp.
    """
    device = body.device_info or DeviceInfo()
    peer = request.client.host if request.client else None
    row = await save_submission(
        db,
        survey_id=body.survey_id,
        device_fingerprint=device.fingerprint(),
        answers=body.answers,
        user_agent=device.user_agent,
        screen_resolution=device.screen_resolution,
        timezone_name=device.timezone,
        language=device.language,
        ip_address=client_ip(request.headers, peer),
    )
    return SubmitSurveyResponse(submission_id=row.id, submitted_at=row.submitted_at)


@router.get("/results", response_model=SurveyResultsResponse)
async def survey_results(
    survey_id: Optional[str] = Query(default=None, alias="surveyId"),
    claims: dict[str, Any] = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> SurveyResultsResponse:
    """
    Aggregated statistics plus the raw submission list, newest first.

    401 without a valid bearer token, 400 when surveyId is missing.
    """
    if not survey_id or not survey_id.strip():
        raise ValidationError("Missing required parameter: surveyId")

    rows = await list_submissions(db, survey_id)
    records = [SubmissionRecord.model_validate(row) for row in rows]
    summary = aggregate(records)
    logger.info(
        "Survey results survey_id=%s submissions=%d devices=%d",
        survey_id, summary.total_count, summary.unique_device_count,
    )
    return SurveyResultsResponse(
        survey_id=survey_id,
        statistics=SurveyStatistics(
            total_count=summary.total_count,
            unique_device_count=summary.unique_device_count,
            by_day=summary.by_day,
            date_range=summary.date_range,
        ),
        device_groups=summary.device_groups,
        submissions=records,
    )
