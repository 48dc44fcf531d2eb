import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.credentials import run_token_refresh
from core.services import Services

logger = logging.getLogger(__name__)

async def run_reminders(services: Services):
    try:
        await services.reminder_job().run()
    except Exception:
        logger.exception("Scheduled reminder check failed")

async def run_overdue_reminders(services: Services):
    try:
        await services.overdue_job().run()
    except Exception:
        logger.exception("Scheduled overdue reminder check failed")

async def run_water_reminders(services: Services):
    try:
        await services.water_job().run()
    except Exception:
        logger.exception("Scheduled water reminder check failed")

async def run_task_generation(services: Services):
    try:
        await services.generation_job().run()
    except Exception:
        logger.exception("Scheduled task generation failed")

async def run_credential_refresh(services: Services):
    try:
        await run_token_refresh(services.store, services.refresher())
    except Exception:
        logger.exception("Scheduled token refresh failed")

def start_scheduler(services: Services) -> AsyncIOScheduler:
    """
    Registers the periodic jobs and starts the scheduler on the running event loop.
    Overlapping runs are harmless, but max_instances=1 keeps a slow run from piling up.
    """
    s = services.settings
    scheduler = AsyncIOScheduler(timezone=s.REMINDER_TIMEZONE)
    jobs = [
        (run_reminders, "deadline_reminders", IntervalTrigger(minutes=s.REMINDER_INTERVAL_MINUTES)),
        (run_overdue_reminders, "overdue_reminders", IntervalTrigger(minutes=s.OVERDUE_INTERVAL_MINUTES)),
        (run_water_reminders, "water_reminders", IntervalTrigger(minutes=s.WATER_INTERVAL_MINUTES)),
        (run_credential_refresh, "token_refresh", IntervalTrigger(minutes=s.TOKEN_REFRESH_INTERVAL_MINUTES)),
        (run_task_generation, "generate_tasks", CronTrigger(hour=s.GENERATION_HOUR, minute=0, timezone=s.REMINDER_TIMEZONE)),
    ]
    for func, job_id, trigger in jobs:
        scheduler.add_job(
            func,
            trigger,
            args=[services],
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    scheduler.start()
    logger.info(f"APScheduler started with {len(jobs)} jobs ({s.REMINDER_TIMEZONE})")
    return scheduler
