from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger


def build_auction_sweep_scheduler(cron_expr: str, job_fn) -> AsyncIOScheduler:
    """Schedule the activation/expiry sweep; the engine itself never self-schedules."""
    fields = cron_expr.split()
    if len(fields) != 5:
        raise ValueError("Cron must have 5 fields: min hour day month day_of_week")
    minute, hour, day, month, day_of_week = fields
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        job_fn,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone="UTC",
        ),
        id="auction_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
