from datetime import date, datetime, timedelta

from core.database import Store, NOTIFICATION_LOG, load_records
from models.notification import ThrottleLogEntry

OVERDUE_SUMMARY = "overdue_summary"
WATER_REMINDER = "water_reminder"

SLOT_KEY = ("user_id", "category", "slot", "slot_date")

class ThrottleGate:
    """
    Rate limit for aggregate notifications, per (user, category).

    Two flavours share one log collection:
    - rolling interval (overdue summary): one row per user and category, upserted
    - slot lookback (water reminder): one row per (user, category, slot, local date),
      claimed before sending, so a scheduler firing several times around a slot,
      or two overlapping invocations, send only once
    """

    def __init__(self, store: Store):
        self.store = store

    async def should_send(self, user_id: str, category: str, now: datetime, interval: timedelta) -> bool:
        rows = await self.store.find(NOTIFICATION_LOG, {"user_id": user_id, "category": category, "slot": None})
        entries = load_records(ThrottleLogEntry, rows)
        if not entries:
            return True
        last_sent = max(entry.sent_at for entry in entries)
        return now - last_sent >= interval

    async def record_sent(self, user_id: str, category: str, now: datetime) -> None:
        entry = ThrottleLogEntry(user_id=user_id, category=category, sent_at=now)
        await self.store.upsert(NOTIFICATION_LOG, entry.model_dump(), conflict_keys=("user_id", "category", "slot"))

    async def sent_in_slot(self, user_id: str, category: str, slot: str, now: datetime, lookback: timedelta) -> bool:
        rows = await self.store.find(NOTIFICATION_LOG, {
            "user_id": user_id,
            "category": category,
            "slot": slot,
            "sent_at": {"$gte": now - lookback},
        })
        return len(rows) > 0

    async def claim_slot(
        self, user_id: str, category: str, slot: str, slot_date: date, now: datetime, lookback: timedelta
    ) -> bool:
        """True iff this caller now owns the slot and should send."""
        if await self.sent_in_slot(user_id, category, slot, now, lookback):
            return False
        entry = ThrottleLogEntry(user_id=user_id, category=category, sent_at=now, slot=slot, slot_date=slot_date)
        return await self.store.insert_unique(NOTIFICATION_LOG, entry.model_dump(), SLOT_KEY) is not None

    async def release_slot(self, user_id: str, category: str, slot: str, slot_date: date) -> None:
        """Gives a claimed slot back, e.g. when every send for it failed."""
        await self.store.delete(NOTIFICATION_LOG, {
            "user_id": user_id,
            "category": category,
            "slot": slot,
            "slot_date": slot_date.isoformat(),
        })
