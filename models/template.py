from datetime import date
from typing import Optional
from pydantic import BaseModel, Field, field_serializer, field_validator

from core.time_utils import parse_date
from models.todo import TODAY_LIST_ID

class CommonTask(BaseModel):
    """
    A recurring (or one-time) task pattern.
    deadline_time is already stored in UTC ("HH:MM").
    """
    id: Optional[str] = Field(alias="_id", default=None)
    user_id: str
    text: str
    description: Optional[str] = None
    time: Optional[str] = None
    deadline_date: Optional[date] = None
    deadline_time: Optional[str] = None
    deadline_recurring: Optional[str] = None
    list_id: Optional[int] = TODAY_LIST_ID

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value) if value is not None else None

    @field_validator("deadline_date", mode="before")
    @classmethod
    def lenient_date(cls, value):
        return parse_date(value)

    @field_validator("deadline_time", "deadline_recurring", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()

    @field_serializer("deadline_date")
    def serialize_date(self, value: Optional[date], _info):
        return value.isoformat() if value else None

class DailyTask(BaseModel):
    """A task repeated every day. time is local wall-clock time ("HH:MM")."""
    id: Optional[str] = Field(alias="_id", default=None)
    user_id: str
    text: str
    description: Optional[str] = None
    time: Optional[str] = None
    list_id: Optional[int] = TODAY_LIST_ID

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value) if value is not None else None
