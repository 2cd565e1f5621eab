"""
Fan-out of scheduled engine work over tenants.

A job is an ``async def job(session, tenant)`` registered with
``@tenant_job(name)``. The runner loads every active tenant, opens one
session per tenant and calls the job with it; the tenant dict carries the
id the job hands to its tenant-scoped services. A tenant whose run raises
is rolled back and reported as failed while the other tenants carry on.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growthdesk.core.tenant_context import tenant_to_dict

logger = logging.getLogger(__name__)

TenantJob = Callable[[AsyncSession, dict], Awaitable[Any]]

_tenant_jobs: Dict[str, TenantJob] = {}


def tenant_job(name: str):
    """Register ``func`` under ``name``; the job's return value becomes the tenant's output."""
    def register(func: TenantJob) -> TenantJob:
        if name in _tenant_jobs and _tenant_jobs[name] is not func:
            logger.warning(f"Tenant job '{name}' re-registered by {func.__module__}.{func.__name__}")
        _tenant_jobs[name] = func
        return func
    return register


def registered_jobs() -> List[str]:
    return sorted(_tenant_jobs)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class TenantJobRunner:
    """Runs one registered job for every active tenant, at most ``max_concurrent`` at a time."""

    def __init__(self, max_concurrent: int = 5, session_factory=None):
        self.max_concurrent = max_concurrent
        self._slots = asyncio.Semaphore(max_concurrent)
        self._session_factory = session_factory

    @property
    def session_factory(self):
        # Resolved lazily so importing the jobs package never builds the engine
        if self._session_factory is None:
            from growthdesk.database import async_session_factory
            self._session_factory = async_session_factory
        return self._session_factory

    async def get_active_tenants(self) -> List[dict]:
        from growthdesk.models.tenant import Tenant

        async with self.session_factory() as session:
            rows = await session.scalars(
                select(Tenant).where(Tenant.status == "active").order_by(Tenant.created_at)
            )
            return [tenant_to_dict(tenant) for tenant in rows]

    async def run_job_for_tenant(self, job_name: str, job: TenantJob, tenant: dict) -> dict:
        outcome: Dict[str, Any] = {
            "tenant_id": str(tenant["id"]),
            "subdomain": tenant["subdomain"],
            "job": job_name,
            "status": "success",
            "output": None,
            "error": None,
        }
        started = time.monotonic()

        async with self._slots:
            async with self.session_factory() as session:
                try:
                    outcome["output"] = await job(session, tenant)
                    await session.commit()
                except Exception as e:
                    await session.rollback()
                    outcome["status"] = "failed"
                    outcome["error"] = str(e)
                    logger.error(f"Job '{job_name}' failed for tenant '{tenant['subdomain']}': {e}")

        outcome["duration_ms"] = _elapsed_ms(started)
        return outcome

    async def run_job(self, job_name: str) -> dict:
        """Run ``job_name`` across tenants and return a summary with one result per tenant.

        Raises ValueError for a name nobody registered.
        """
        job = _tenant_jobs.get(job_name)
        if job is None:
            raise ValueError(f"Unknown job: {job_name}. Registered: {registered_jobs()}")

        started_at = datetime.now(timezone.utc)
        started = time.monotonic()

        tenants = await self.get_active_tenants()
        if not tenants:
            logger.info(f"Job '{job_name}' skipped: no active tenants")
            return {"job": job_name, "status": "skipped", "reason": "no_active_tenants", "tenant_count": 0}

        results = list(await asyncio.gather(
            *(self.run_job_for_tenant(job_name, job, tenant) for tenant in tenants)
        ))
        failed = sum(1 for r in results if r["status"] == "failed")
        summary = {
            "job": job_name,
            "status": "completed",
            "started_at": started_at.isoformat(),
            "duration_ms": _elapsed_ms(started),
            "tenant_count": len(tenants),
            "successful": len(results) - failed,
            "failed": failed,
            "results": results,
        }

        log = logger.warning if failed else logger.info
        log(
            f"Job '{job_name}' finished for {len(tenants)} tenants "
            f"({failed} failed) in {summary['duration_ms']}ms"
        )
        return summary


_runner: Optional[TenantJobRunner] = None


def get_tenant_job_runner() -> TenantJobRunner:
    global _runner
    if _runner is None:
        from growthdesk.config import settings
        _runner = TenantJobRunner(max_concurrent=settings.JOB_MAX_CONCURRENT_TENANTS)
    return _runner


async def run_tenant_job(job_name: str) -> dict:
    return await get_tenant_job_runner().run_job(job_name)
