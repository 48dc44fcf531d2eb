from datetime import date as calendar_date, datetime
from typing import Optional, Any
from pydantic import BaseModel, Field, field_serializer, field_validator

from core.time_utils import get_current_time, parse_date, to_utc

TODAY_LIST_ID = 0 # "Today" list sentinel

def _stringify_id(value: Any) -> Optional[str]:
    # ObjectId from Mongo, int from older rows
    if value is None:
        return None
    return str(value)

class Deadline(BaseModel):
    date: Optional[calendar_date] = None
    time: Optional[str] = None # "HH:MM", UTC
    recurring: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("date", mode="before")
    @classmethod
    def lenient_date(cls, value):
        return parse_date(value)

    @field_validator("time", "recurring", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if value is None or not isinstance(value, str) or not value.strip():
            return None
        return value.strip()

    @field_serializer("date")
    def serialize_date(self, value: Optional[calendar_date], _info):
        return value.isoformat() if value else None

class TodoCreate(BaseModel):
    user_id: str
    text: str
    description: Optional[str] = None
    list_id: Optional[int] = TODAY_LIST_ID
    time: Optional[str] = None
    deadline: Optional[Deadline] = None
    daily_task_id: Optional[str] = None
    common_task_id: Optional[str] = None
    scheduled_for: Optional[calendar_date] = None

    @field_serializer("scheduled_for")
    def serialize_scheduled_for(self, value: Optional[calendar_date], _info):
        return value.isoformat() if value else None

class Todo(TodoCreate):
    """
    A concrete task instance.

    deadline_notified_at is the deadline instant a push was already claimed for.
    It is written once by the reminder job and never cleared by it.
    """
    id: Optional[str] = Field(alias="_id", default=None)
    completed: bool = False
    deadline_notified_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=get_current_time)

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("id", "daily_task_id", "common_task_id", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return _stringify_id(value)

    @field_validator("scheduled_for", mode="before")
    @classmethod
    def lenient_scheduled_for(cls, value):
        return parse_date(value)

    @field_validator("deadline_notified_at", "created_at", mode="before")
    @classmethod
    def aware_datetimes(cls, value):
        if isinstance(value, datetime):
            return to_utc(value)
        return value

    @field_validator("deadline", mode="before")
    @classmethod
    def drop_dateless_deadline(cls, value):
        # A deadline without a usable date is treated as no deadline
        if isinstance(value, dict) and parse_date(value.get("date")) is None:
            return None
        return value

    @property
    def occurrence_date(self) -> Optional[calendar_date]:
        """The template occurrence this instance stands for."""
        if self.scheduled_for:
            return self.scheduled_for
        return self.deadline.date if self.deadline else None
