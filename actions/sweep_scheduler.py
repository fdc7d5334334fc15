"""
Sweep Scheduler
Periodic workers for the reminder, missed-dose and weekly rollover sweeps
"""

import logging
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from actions.alert_engine import MissedDoseDetector
from actions.reminder_engine import ReminderDispatcher
from services.challenge_service import ChallengeTracker


logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None


def _timezone():
    try:
        return ZoneInfo(settings.APP_TZ)
    except Exception:
        logger.warning(f"Unknown APP_TZ '{settings.APP_TZ}', using UTC")
        return ZoneInfo("UTC")


def _weekly_trigger(tz) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(settings.WEEKLY_ROLLOVER_CRON, timezone=tz)
    except ValueError:
        logger.warning(f"Invalid WEEKLY_ROLLOVER_CRON '{settings.WEEKLY_ROLLOVER_CRON}'; using Monday 00:05")
        return CronTrigger(day_of_week="mon", hour=0, minute=5, timezone=tz)


def start_scheduler(
    reminders: Optional[ReminderDispatcher] = None,
    missed: Optional[MissedDoseDetector] = None,
    challenges: Optional[ChallengeTracker] = None,
) -> AsyncIOScheduler:
    """Start the periodic sweeps; a second call returns the running scheduler"""
    global scheduler
    if scheduler is not None:
        return scheduler

    reminders = reminders or ReminderDispatcher()
    missed = missed or MissedDoseDetector()
    challenges = challenges or ChallengeTracker()
    tz = _timezone()

    scheduler = AsyncIOScheduler(timezone=tz)
    job_defaults = {"max_instances": 1, "coalesce": True, "misfire_grace_time": 60}

    scheduler.add_job(
        reminders.run_reminder_sweep,
        IntervalTrigger(minutes=settings.REMINDER_SWEEP_INTERVAL_MINUTES, timezone=tz),
        id="reminder_sweep",
        **job_defaults,
    )
    scheduler.add_job(
        missed.run_missed_dose_sweep,
        IntervalTrigger(minutes=settings.MISSED_DOSE_SWEEP_INTERVAL_MINUTES, timezone=tz),
        id="missed_dose_sweep",
        **job_defaults,
    )
    scheduler.add_job(
        challenges.run_weekly_rollover,
        _weekly_trigger(tz),
        id="weekly_rollover",
        **job_defaults,
    )
    scheduler.start()
    logger.info(
        f"Sweep scheduler started (reminders every {settings.REMINDER_SWEEP_INTERVAL_MINUTES}m, "
        f"missed doses every {settings.MISSED_DOSE_SWEEP_INTERVAL_MINUTES}m, "
        f"rollover '{settings.WEEKLY_ROLLOVER_CRON}', tz={settings.APP_TZ})"
    )
    return scheduler


def shutdown_scheduler():
    global scheduler
    if scheduler is None:
        return
    scheduler.shutdown(wait=False)
    scheduler = None
    logger.info("Sweep scheduler stopped")
