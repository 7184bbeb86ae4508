"""
schemas.py — device identity data contracts.

DeviceInfo mirrors what the survey form reads from the browser. Field names
are camelCase on the wire; Python code uses the snake_case attributes.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from courseweb.identity.fingerprint import fingerprint_from_attributes


class DeviceInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_agent: Optional[str] = Field(default=None, alias="userAgent", max_length=512)
    screen_resolution: Optional[str] = Field(default=None, alias="screenResolution", max_length=32)
    timezone: Optional[str] = Field(default=None, max_length=64)
    language: Optional[str] = Field(default=None, max_length=32)

    def fingerprint(self) -> str:
        return fingerprint_from_attributes(
            self.user_agent, self.screen_resolution, self.timezone, self.language
        )
