"""
Job scheduler service using APScheduler.
Owns the one-shot resume timers, the cron ticks of schedule-triggered
workflows and the periodic maintenance sweeps.
"""
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.logging import get_logger

logger = get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the singleton scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone="UTC")
    return _scheduler


def start_scheduler():
    """Start the scheduler if not already running."""
    scheduler = get_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    global _scheduler
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown")
    _scheduler = None


def build_cron_trigger(cron_expression: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a 5-field (minute hour day month weekday) or 6-field
    (second minute hour day month weekday) cron expression.

    Raises:
        ValueError: invalid expression or timezone
    """
    parts = cron_expression.split()

    if len(parts) >= 6:
        return CronTrigger(
            second=parts[0],
            minute=parts[1],
            hour=parts[2],
            day=parts[3],
            month=parts[4],
            day_of_week=parts[5],
            timezone=timezone
        )

    if not parts:
        raise ValueError("empty cron expression")
    if len(parts) < 5:
        parts.extend(['*'] * (5 - len(parts)))
    return CronTrigger(
        second='0',
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone
    )


def register_cron_job(
    job_id: str,
    cron_expression: str,
    callback: Callable,
    timezone: str = "UTC",
    **kwargs
) -> str:
    """
    Register a cron job with the scheduler.

    Args:
        job_id: Unique identifier for the job
        cron_expression: 5- or 6-field cron expression
        callback: Async function to call when job fires
        timezone: Timezone for schedule (default: UTC)
        **kwargs: Additional arguments passed to the callback

    Returns:
        The job_id
    """
    get_scheduler().add_job(
        callback,
        trigger=build_cron_trigger(cron_expression, timezone),
        id=job_id,
        replace_existing=True,
        kwargs=kwargs
    )
    logger.info("Registered cron job", job_id=job_id, cron=cron_expression)
    return job_id


def register_resume_job(job_id: str, run_at: float, callback: Callable, **kwargs) -> str:
    """Register a one-shot job firing at a Unix timestamp.

    Jobs whose time already passed fire immediately; a late fire is
    accepted by the engine, an early one never happens.
    """
    run_date = datetime.fromtimestamp(run_at, tz=dt_timezone.utc)
    get_scheduler().add_job(
        callback,
        trigger=DateTrigger(run_date=run_date),
        id=job_id,
        replace_existing=True,
        misfire_grace_time=None,
        kwargs=kwargs
    )
    logger.debug("Registered resume job", job_id=job_id, run_at=run_date.isoformat())
    return job_id


def register_interval_job(job_id: str, seconds: float, callback: Callable, **kwargs) -> str:
    """Register a periodic job (maintenance sweeps)."""
    get_scheduler().add_job(
        callback,
        trigger=IntervalTrigger(seconds=seconds),
        id=job_id,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs=kwargs
    )
    logger.info("Registered interval job", job_id=job_id, seconds=seconds)
    return job_id


def remove_job(job_id: str) -> bool:
    """
    Remove a job from the scheduler.

    Returns:
        True if job was removed, False if not found
    """
    try:
        get_scheduler().remove_job(job_id)
        logger.debug("Removed job", job_id=job_id)
        return True
    except JobLookupError:
        return False


def get_job_info(job_id: str) -> Optional[Dict]:
    """
    Get information about a scheduled job.

    Returns:
        Dict with job info or None if not found
    """
    job = get_scheduler().get_job(job_id)
    if job:
        # Pending jobs (scheduler not started) have no next_run_time yet
        next_run = getattr(job, "next_run_time", None)
        return {
            "id": job.id,
            "next_run_time": next_run.isoformat() if next_run else None,
            "trigger": str(job.trigger)
        }
    return None
