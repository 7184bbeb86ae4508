"""
schemas.py — progress tracking data contracts.

Defines:
  - ProgressRecord      (one stored row, read from ProgressRecordORM)
  - PresenceEvent       (sync / join / leave on the presence channel)
  - ChangeEvent         (INSERT / UPDATE / DELETE on progress_tracking)
  - Session / step request and response bodies
  - UserProgress, ProgressStats  (admin statistics)
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from courseweb.cache import PROGRESS_TABLE
from courseweb.utils.datetime_helpers import ensure_utc


class ProgressRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    device_fingerprint: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    current_step: int
    total_steps: int
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


# ---------------------------------------------------------------------------
# Realtime events
# ---------------------------------------------------------------------------

class PresenceEvent(BaseModel):
    """
    sync carries the full membership in `state`; join and leave carry one key
    and the metadata entries that arrived or left with it.
    """
    event: Literal["sync", "join", "leave"]
    key: Optional[str] = None
    metas: List[Dict[str, Any]] = Field(default_factory=list)
    state: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


class ChangeEvent(BaseModel):
    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    table: str = PROGRESS_TABLE
    session_id: str
    device_fingerprint: str
    new: Optional[ProgressRecord] = None
    old: Optional[ProgressRecord] = None


# ---------------------------------------------------------------------------
# HTTP bodies
# ---------------------------------------------------------------------------

class SessionRequest(BaseModel):
    device_fingerprint: Optional[str] = Field(default=None, max_length=100)
    session_id: Optional[str] = Field(default=None, max_length=100)


class SessionResponse(BaseModel):
    session_id: str
    device_fingerprint: str
    progress: Optional[ProgressRecord] = None


class StepRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=100)
    device_fingerprint: str = Field(min_length=1, max_length=100)
    step: int
    total_steps: Optional[int] = None


class UserProgress(BaseModel):
    device_fingerprint: str
    session_id: str
    user_agent: Optional[str] = None
    current_step: int
    total_steps: int
    updated_at: datetime


class ProgressStats(BaseModel):
    total_connections: int
    online_connections: int
    users_progress: List[UserProgress]
