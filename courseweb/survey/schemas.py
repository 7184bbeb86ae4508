"""
schemas.py — survey Pydantic v2 data contracts.

Defines:
  - SubmitSurveyRequest / SubmitSurveyResponse  (camelCase on the wire)
  - SubmissionRecord    (read model the aggregator works on)
  - DeviceSummary, DeviceGroup, DateRange, SurveyAggregate  (aggregator output)
  - SurveyResultsResponse
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from courseweb.identity.schemas import DeviceInfo
from courseweb.utils.datetime_helpers import ensure_utc


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------

class SubmitSurveyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    survey_id: str = Field(alias="surveyId", min_length=1, max_length=100)
    device_info: Optional[DeviceInfo] = Field(default=None, alias="deviceInfo")
    answers: Dict[str, Any]


class SubmitSurveyResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: str = Field(serialization_alias="submissionId")
    submitted_at: datetime = Field(serialization_alias="submittedAt")


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class SubmissionRecord(BaseModel):
    """One stored submission. Built from SurveySubmissionORM via from_attributes."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    survey_id: str
    device_fingerprint: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    answers: Dict[str, Any] = Field(default_factory=dict)
    submitted_at: datetime

    @field_validator("submitted_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DeviceSummary(BaseModel):
    device_fingerprint: str
    user_agent: Optional[str] = None
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    ip_address: Optional[str] = None
    submission_count: int
    first_submission: datetime
    last_submission: datetime


class GroupedSubmission(BaseModel):
    id: str
    submitted_at: datetime
    answers: Dict[str, Any]


class DeviceGroup(BaseModel):
    device_info: DeviceSummary
    submissions: List[GroupedSubmission]


class DateRange(BaseModel):
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None


class SurveyAggregate(BaseModel):
    total_count: int = 0
    unique_device_count: int = 0
    by_day: Dict[str, int] = Field(default_factory=dict)
    device_groups: List[DeviceGroup] = Field(default_factory=list)
    date_range: DateRange = Field(default_factory=DateRange)


class SurveyStatistics(BaseModel):
    total_count: int
    unique_device_count: int
    by_day: Dict[str, int]
    date_range: DateRange


class SurveyResultsResponse(BaseModel):
    survey_id: str
    statistics: SurveyStatistics
    device_groups: List[DeviceGroup]
    submissions: List[SubmissionRecord]
