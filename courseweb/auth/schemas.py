"""
schemas.py — admin auth data contracts.
"""
from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    password: str = Field(default="", description="Shared admin password")


class LoginResponse(BaseModel):
    token: str
    expires_in: str = Field(description="TTL the token was issued with, e.g. '24h'")
