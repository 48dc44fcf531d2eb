from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from fastapi import Request

from core.config import Settings
from core.credentials import CredentialRefresher, GoogleOAuthProvider, OAuthProvider
from core.database import MongoStore, Store
from core.generator import TaskGenerationJob, TaskInstanceGenerator
from core.push import PushSender, WebPushSender
from core.reminders import OverdueSummaryJob, ReminderDispatchJob, WaterReminderJob
from core.time_utils import get_current_time

@dataclass
class Services:
    """Everything a job needs, built once per process and shared by the scheduler and the routes."""
    settings: Settings
    store: Store
    sender: PushSender
    oauth: OAuthProvider
    clock: Callable[[], datetime] = get_current_time

    def reminder_job(self) -> ReminderDispatchJob:
        s = self.settings
        return ReminderDispatchJob(
            self.store,
            self.sender,
            tz_name=s.REMINDER_TIMEZONE,
            clock=self.clock,
            quiet_start=s.QUIET_HOURS_START,
            quiet_end=s.QUIET_HOURS_END,
            icon=s.NOTIFICATION_ICON,
        )

    def overdue_job(self) -> OverdueSummaryJob:
        s = self.settings
        return OverdueSummaryJob(
            self.store,
            self.sender,
            tz_name=s.REMINDER_TIMEZONE,
            interval=timedelta(hours=s.OVERDUE_REMINDER_INTERVAL_HOURS),
            clock=self.clock,
            quiet_start=s.QUIET_HOURS_START,
            quiet_end=s.QUIET_HOURS_END,
            icon=s.NOTIFICATION_ICON,
        )

    def water_job(self) -> WaterReminderJob:
        s = self.settings
        return WaterReminderJob(
            self.store,
            self.sender,
            tz_name=s.REMINDER_TIMEZONE,
            slot_hours=s.WATER_REMINDER_HOURS,
            window_minutes=s.WATER_REMINDER_WINDOW_MINUTES,
            lookback=timedelta(hours=s.WATER_REMINDER_LOOKBACK_HOURS),
            clock=self.clock,
            icon=s.NOTIFICATION_ICON,
        )

    def generation_job(self) -> TaskGenerationJob:
        s = self.settings
        generator = TaskInstanceGenerator(
            target=s.COMMON_TASK_TARGET,
            lookahead_days=s.TASK_LOOKAHEAD_DAYS,
            tz_name=s.REMINDER_TIMEZONE,
        )
        return TaskGenerationJob(self.store, generator, clock=self.clock)

    def refresher(self) -> CredentialRefresher:
        return CredentialRefresher.from_settings(self.store, self.oauth, self.settings, clock=self.clock)

    def close(self) -> None:
        self.store.close()

def build_services(settings: Settings) -> Services:
    return Services(
        settings=settings,
        store=MongoStore.from_settings(settings),
        sender=WebPushSender.from_settings(settings),
        oauth=GoogleOAuthProvider.from_settings(settings),
    )

def get_services(request: Request) -> Services:
    return request.app.state.services
