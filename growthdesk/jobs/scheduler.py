"""
APScheduler wiring for the engine ticks.

Every scheduled entry calls :func:`run_tenant_aware_job`, which hands the
job name to the tenant runner. Intervals come from settings; the payout job
is only scheduled when ``AUTO_PAYOUT_ENABLED`` is set.
"""

import logging
from typing import List

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from growthdesk.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(
    jobstores={"default": MemoryJobStore()},
    executors={"default": AsyncIOExecutor()},
    job_defaults={
        "coalesce": True,
        # A slow sequence tick must never overlap the next one
        "max_instances": 1,
        "misfire_grace_time": 60,
    },
    timezone=settings.SCHEDULER_TIMEZONE,
)


def engine_schedule() -> List[dict]:
    """(job name, title, interval kwargs) for each job enabled by the current settings."""
    schedule = [
        {
            "id": "process_sequence_subscribers",
            "name": "Advance due sequence subscribers",
            "interval": {"minutes": settings.SEQUENCE_PROCESS_INTERVAL_MINUTES},
        },
        {
            "id": "reconcile_affiliate_balances",
            "name": "Reconcile affiliate balances against the ledger",
            "interval": {"hours": settings.BALANCE_RECONCILE_INTERVAL_HOURS},
        },
    ]
    if settings.AUTO_PAYOUT_ENABLED:
        schedule.append({
            "id": "process_scheduled_payouts",
            "name": "Request payouts for active affiliates",
            "interval": {"hours": settings.AUTO_PAYOUT_INTERVAL_HOURS},
        })
    return schedule


async def run_tenant_aware_job(job_name: str):
    from growthdesk.jobs.tenant_job_runner import run_tenant_job

    # APScheduler only logs what escapes; keep the failure in our own log format
    try:
        await run_tenant_job(job_name)
    except Exception as e:
        logger.error(f"Scheduled job '{job_name}' crashed: {e}")


def register_jobs():
    from growthdesk.jobs import affiliate_jobs, sequence_jobs  # noqa: F401  fills the job registry

    for entry in engine_schedule():
        scheduler.add_job(
            run_tenant_aware_job,
            "interval",
            args=[entry["id"]],
            id=entry["id"],
            name=entry["name"],
            replace_existing=True,
            **entry["interval"],
        )


def start_scheduler():
    if scheduler.running:
        return
    register_jobs()
    scheduler.start()
    for job in scheduler.get_jobs():
        logger.info(f"Scheduled '{job.id}', next run at {job.next_run_time}")


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")


def get_job_status() -> List[dict]:
    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
