from datetime import date, datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_serializer, field_validator

from core.errors import PartialDeliveryError
from core.time_utils import get_current_time, to_utc

class PushSubscription(BaseModel):
    id: Optional[str] = Field(alias="_id", default=None)
    user_id: Optional[str] = None
    endpoint: str
    p256dh: str
    auth: str

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return str(value) if value is not None else None

    def to_subscription_info(self) -> Dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

class NotificationPayload(BaseModel):
    title: str
    body: str
    icon: str = "/icon-192.png"
    badge: str = "/icon-192.png"
    tag: str # Unique per logical notification so the device coalesces duplicates
    data: Dict[str, Any] = Field(default_factory=lambda: {"url": "/"})

class ThrottleLogEntry(BaseModel):
    user_id: str
    category: str # 'overdue_summary', 'water_reminder'
    sent_at: datetime = Field(default_factory=get_current_time)
    slot: Optional[str] = None # e.g. "14:00" for slot-based categories
    slot_date: Optional[date] = None # Local date of the slot

    model_config = {"extra": "ignore"}

    @field_validator("sent_at", mode="before")
    @classmethod
    def aware_sent_at(cls, value):
        if isinstance(value, datetime):
            return to_utc(value)
        return value

    @field_serializer("slot_date")
    def serialize_slot_date(self, value: Optional[date], _info):
        return value.isoformat() if value else None

class DeliveryOutcome(BaseModel):
    sent: int = 0
    failed: int = 0
    removed: int = 0 # Subscriptions the push service reported as gone
    failures: List[PartialDeliveryError] = Field(default_factory=list)

    model_config = {"arbitrary_types_allowed": True}

class DispatchSummary(BaseModel):
    checked: datetime = Field(default_factory=get_current_time)
    skipped: Optional[str] = None
    due: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    removed: int = 0
    errors: int = 0

class OverdueSummary(BaseModel):
    checked: datetime = Field(default_factory=get_current_time)
    skipped: Optional[str] = None
    overdue: int = 0
    users_notified: int = 0
    throttled: int = 0
    sent: int = 0
    failed: int = 0
    removed: int = 0
    errors: int = 0

class WaterSummary(BaseModel):
    checked: datetime = Field(default_factory=get_current_time)
    skipped: Optional[str] = None
    slot: Optional[str] = None
    suppressed: int = 0
    sent: int = 0
    failed: int = 0
    removed: int = 0
    errors: int = 0

class GenerationSummary(BaseModel):
    checked: datetime = Field(default_factory=get_current_time)
    users_processed: int = 0
    common_tasks_generated: int = 0
    daily_tasks_generated: int = 0
    errors: List[Dict[str, Any]] = []
