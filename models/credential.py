from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from core.time_utils import get_current_time, to_utc

class OAuthCredential(BaseModel):
    """
    A stored calendar connection.

    enabled=False is terminal: only a new out-of-band authorization turns it back on.
    """
    id: Optional[str] = Field(alias="_id", default=None)
    user_id: str
    access_token: str = ""
    refresh_token: str = ""
    expires_at: Optional[datetime] = None
    enabled: bool = True
    calendar_id: Optional[str] = "primary"
    updated_at: datetime = Field(default_factory=get_current_time)

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value) if value is not None else None

    @field_validator("expires_at", "updated_at", mode="before")
    @classmethod
    def aware_datetimes(cls, value):
        if isinstance(value, datetime):
            return to_utc(value)
        return value

class TokenGrant(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None # Set only when the provider rotated it
    expires_at: Optional[datetime] = None

class TokenRefreshSummary(BaseModel):
    checked: datetime = Field(default_factory=get_current_time)
    refreshed: int = 0
    revoked: int = 0
    failed: int = 0
    connections: int = 0
