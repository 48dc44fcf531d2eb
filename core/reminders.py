import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, List

from core.database import Store, PUSH_SUBSCRIPTIONS, TODOS, load_records
from core.dedup import NotificationDeduper
from core.due import deadline_instant, is_due, is_overdue
from core.errors import StoreUnavailableError
from core.push import (
    PushSender,
    deliver,
    overdue_summary_payload,
    task_reminder_payload,
    water_reminder_payload,
)
from core.quiet_hours import QUIET_END_HOUR, QUIET_START_HOUR, is_quiet
from core.throttle import OVERDUE_SUMMARY, WATER_REMINDER, ThrottleGate
from core.time_utils import get_current_time, to_local
from models.notification import (
    DeliveryOutcome,
    DispatchSummary,
    OverdueSummary,
    PushSubscription,
    WaterSummary,
)
from models.todo import Todo

logger = logging.getLogger(__name__)

QUIET_HOURS = "quiet_hours"

async def _load_open_todos(store: Store) -> List[Todo]:
    rows = await store.find(TODOS, {"completed": False, "deadline.date": {"$ne": None}})
    return [todo for todo in load_records(Todo, rows) if todo.deadline is not None]

async def _load_subscriptions(store: Store, user_id: str) -> List[PushSubscription]:
    rows = await store.find(PUSH_SUBSCRIPTIONS, {"user_id": user_id})
    return load_records(PushSubscription, rows)

class ReminderDispatchJob:
    """
    Sends one push per due deadline.

    Order per invocation: quiet hours check, load open todos, keep the due and
    unclaimed ones, claim each, then deliver to the owner's subscriptions.
    """

    def __init__(
        self,
        store: Store,
        sender: PushSender,
        tz_name: str = "UTC",
        clock: Callable[[], datetime] = get_current_time,
        quiet_start: int = QUIET_START_HOUR,
        quiet_end: int = QUIET_END_HOUR,
        icon: str = "/icon-192.png",
    ):
        self.store = store
        self.sender = sender
        self.deduper = NotificationDeduper(store)
        self.tz_name = tz_name
        self.clock = clock
        self.quiet_start = quiet_start
        self.quiet_end = quiet_end
        self.icon = icon

    async def run(self) -> DispatchSummary:
        now = self.clock()
        summary = DispatchSummary(checked=now)
        if is_quiet(now, self.tz_name, self.quiet_start, self.quiet_end):
            logger.info("Skipping reminders: within quiet hours")
            summary.skipped = QUIET_HOURS
            return summary

        logger.info(f"Starting reminder check at {now.isoformat()}")
        todos = await _load_open_todos(self.store)
        due = [
            todo for todo in todos
            if todo.deadline_notified_at is None
            and is_due(now, todo.deadline.date, todo.deadline.time)
        ]
        summary.due = len(due)
        if not due:
            logger.info("No todos are due at this time")
            return summary

        logger.info(f"Found {len(due)} due todos")
        for todo in due:
            try:
                await self._dispatch(todo, summary)
            except StoreUnavailableError:
                raise
            except Exception:
                logger.exception(f"Error processing todo #{todo.id}")
                summary.errors += 1

        logger.info(
            f"Reminder check complete: {summary.claimed} claimed, "
            f"{summary.sent} sent, {summary.failed} failed"
        )
        return summary

    async def _dispatch(self, todo: Todo, summary: DispatchSummary) -> None:
        instant = deadline_instant(todo.deadline.date, todo.deadline.time)
        if not await self.deduper.try_claim(todo.id, instant):
            return
        summary.claimed += 1

        subscriptions = await _load_subscriptions(self.store, todo.user_id)
        if not subscriptions:
            logger.info(f"Todo #{todo.id} claimed but user {todo.user_id} has no push subscriptions")
            return

        outcome = await deliver(self.store, self.sender, subscriptions, task_reminder_payload(todo, self.icon))
        summary.sent += outcome.sent
        summary.failed += outcome.failed
        summary.removed += outcome.removed

class OverdueSummaryJob:
    """Periodic "you have N overdue items" push, at most once per interval per user."""

    def __init__(
        self,
        store: Store,
        sender: PushSender,
        tz_name: str = "UTC",
        interval: timedelta = timedelta(hours=4),
        clock: Callable[[], datetime] = get_current_time,
        quiet_start: int = QUIET_START_HOUR,
        quiet_end: int = QUIET_END_HOUR,
        icon: str = "/icon-192.png",
    ):
        self.store = store
        self.sender = sender
        self.gate = ThrottleGate(store)
        self.tz_name = tz_name
        self.interval = interval
        self.clock = clock
        self.quiet_start = quiet_start
        self.quiet_end = quiet_end
        self.icon = icon

    async def run(self) -> OverdueSummary:
        now = self.clock()
        summary = OverdueSummary(checked=now)
        if is_quiet(now, self.tz_name, self.quiet_start, self.quiet_end):
            logger.info("Skipping overdue reminders: within quiet hours")
            summary.skipped = QUIET_HOURS
            return summary

        todos = await _load_open_todos(self.store)
        overdue = [todo for todo in todos if is_overdue(now, todo.deadline.date, todo.deadline.time)]
        summary.overdue = len(overdue)
        counts = Counter(todo.user_id for todo in overdue if todo.user_id)

        for user_id, count in counts.items():
            try:
                await self._notify_user(user_id, count, now, summary)
            except StoreUnavailableError:
                raise
            except Exception:
                logger.exception(f"Error sending overdue summary to user {user_id}")
                summary.errors += 1

        logger.info(
            f"Overdue reminder check complete: {summary.overdue} overdue, "
            f"{summary.users_notified} users notified, {summary.throttled} throttled"
        )
        return summary

    async def _notify_user(self, user_id: str, count: int, now: datetime, summary: OverdueSummary) -> None:
        if not await self.gate.should_send(user_id, OVERDUE_SUMMARY, now, self.interval):
            summary.throttled += 1
            return

        subscriptions = await _load_subscriptions(self.store, user_id)
        if not subscriptions:
            return

        outcome = await deliver(self.store, self.sender, subscriptions, overdue_summary_payload(user_id, count, self.icon))
        summary.sent += outcome.sent
        summary.failed += outcome.failed
        summary.removed += outcome.removed
        summary.users_notified += 1
        await self.gate.record_sent(user_id, OVERDUE_SUMMARY, now)

class WaterReminderJob:
    """
    Hydration pushes at fixed local slots. The scheduler may fire several times
    near a slot, possibly overlapping; each user's slot is claimed in the log
    before sending so only one invocation sends.
    """

    def __init__(
        self,
        store: Store,
        sender: PushSender,
        tz_name: str = "UTC",
        slot_hours=(9, 12, 14, 16),
        window_minutes: int = 5,
        lookback: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] = get_current_time,
        icon: str = "/icon-192.png",
    ):
        self.store = store
        self.sender = sender
        self.gate = ThrottleGate(store)
        self.tz_name = tz_name
        self.slot_hours = tuple(slot_hours)
        self.window_minutes = window_minutes
        self.lookback = lookback
        self.clock = clock
        self.icon = icon

    async def run(self) -> WaterSummary:
        now = self.clock()
        local = to_local(now, self.tz_name)
        summary = WaterSummary(checked=now)
        if local.hour not in self.slot_hours or local.minute >= self.window_minutes:
            logger.info(f"Skipping water reminders: not a reminder time (current: {local:%H:%M})")
            summary.skipped = "not_reminder_time"
            return summary

        slot = f"{local.hour:02d}:00"
        summary.slot = slot
        rows = await self.store.find(PUSH_SUBSCRIPTIONS, {"user_id": {"$ne": None}})
        by_user: Dict[str, List[PushSubscription]] = {}
        for subscription in load_records(PushSubscription, rows):
            by_user.setdefault(subscription.user_id, []).append(subscription)

        payload = water_reminder_payload(self.icon)
        for user_id, subscriptions in by_user.items():
            try:
                await self._notify_user(user_id, subscriptions, payload, slot, local.date(), now, summary)
            except StoreUnavailableError:
                raise
            except Exception:
                logger.exception(f"Error sending water reminder to user {user_id}")
                summary.errors += 1

        logger.info(f"Water reminders: sent {summary.sent} notifications at {slot}")
        return summary

    async def _notify_user(self, user_id, subscriptions, payload, slot, slot_date, now, summary: WaterSummary) -> None:
        if not await self.gate.claim_slot(user_id, WATER_REMINDER, slot, slot_date, now, self.lookback):
            summary.suppressed += 1
            return

        outcome: DeliveryOutcome = await deliver(self.store, self.sender, subscriptions, payload)
        summary.sent += outcome.sent
        summary.failed += outcome.failed
        summary.removed += outcome.removed
        if not outcome.sent:
            # Nothing reached the user; a later invocation in the window may retry
            await self.gate.release_slot(user_id, WATER_REMINDER, slot, slot_date)
