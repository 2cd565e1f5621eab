"""
Email Sequence Jobs.

Polls every tenant for subscribers whose next step is due and advances them.

Triggers:
- Interval job every SEQUENCE_PROCESS_INTERVAL_MINUTES (via APScheduler)
"""
import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from growthdesk.config import settings
from growthdesk.jobs.tenant_job_runner import tenant_job
from growthdesk.services.email_sequence_service import EmailSequenceService

logger = logging.getLogger(__name__)


@tenant_job("process_sequence_subscribers")
async def process_sequence_subscribers(session: AsyncSession, tenant: dict) -> Dict[str, Any]:
    """Advance up to SEQUENCE_BATCH_SIZE due subscribers for one tenant."""
    service = EmailSequenceService(session, tenant["id"])
    summary = await service.process_due_subscribers(limit=settings.SEQUENCE_BATCH_SIZE)

    if summary.processed:
        logger.info(
            f"Tenant '{tenant['subdomain']}': advanced {summary.processed} subscribers "
            f"({summary.sent} sent, {summary.failed} failed)"
        )
    return summary.model_dump()
