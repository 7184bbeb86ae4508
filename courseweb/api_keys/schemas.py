"""
schemas.py — API key lookup contracts.

The request fields are typed loosely so the route can tell a missing
field from a non-string one and report each with its own 400 message.
"""
from typing import Any

from pydantic import BaseModel


class ApiKeyLookupRequest(BaseModel):
    student_id: Any = None
    name: Any = None


class ApiKeyLookupResponse(BaseModel):
    api_key: str
    student_id: str
    name: str
