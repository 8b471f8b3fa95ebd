"""APScheduler integration for FastAPI.

Fires the daily investment run and the hourly live-trade run. Every job goes
through the same coordinator entry point as the HTTP triggers, so a duplicate
fire is rejected by the cooldown guard rather than by the scheduler.
"""

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from profit_service.config import settings
from profit_service.engine.errors import RunAbortedError
from profit_service.utils.constants import PositionKind, RunTrigger

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone=timezone.utc)


def _job_id(kind: PositionKind) -> str:
    return f"distribution_{kind.value}"


def _get_trigger(kind: PositionKind) -> CronTrigger:
    if kind == PositionKind.INVESTMENT:
        return CronTrigger(
            hour=settings.investment_run_hour,
            minute=settings.investment_run_minute,
            timezone=timezone.utc,
        )
    return CronTrigger(minute=settings.live_trade_run_minute, timezone=timezone.utc)


async def run_scheduled_distribution(kind: str):
    """Job body: one scheduled run for the current period of ``kind``."""
    from profit_service.engine.coordinator import get_coordinator

    try:
        result = await get_coordinator().run_distribution(
            kind, datetime.now(timezone.utc), trigger=RunTrigger.SCHEDULED
        )
    except RunAbortedError as e:
        logger.error(f"Scheduled {kind} run aborted ({e.error_class}): {e}")
        return
    if result.reason:
        logger.info(f"Scheduled {kind} run for {result.period_key}: {result.status} ({result.reason})")


def add_distribution_job(kind: PositionKind):
    """Add or replace the scheduler job for a position kind."""
    job_id = _job_id(kind)

    if scheduler.get_job(job_id):
        scheduler.remove_job(job_id)

    scheduler.add_job(
        run_scheduled_distribution,
        trigger=_get_trigger(kind),
        args=[kind.value],
        id=job_id,
        name=f"Profit distribution ({kind.value})",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )
    logger.info(f"Scheduled {kind.value} distribution: {_get_trigger(kind)}")


def start_scheduler():
    """Start the scheduler with one job per position kind."""
    for kind in PositionKind:
        add_distribution_job(kind)

    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
