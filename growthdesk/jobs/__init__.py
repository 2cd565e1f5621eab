"""
Background Jobs Module

Handles scheduled tasks for:
- Email sequence progression
- Affiliate balance reconciliation
- Scheduled affiliate payouts
"""

from growthdesk.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from growthdesk.jobs.tenant_job_runner import TenantJobRunner, run_tenant_job, tenant_job
from growthdesk.jobs import affiliate_jobs, sequence_jobs  # noqa: F401

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "TenantJobRunner",
    "run_tenant_job",
    "tenant_job",
]
