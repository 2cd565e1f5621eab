"""
Affiliate Jobs.

- Balance reconciliation: folds each affiliate's ledger and reports drift
  against the stored totals. Report only, nothing is rewritten.
- Scheduled payouts: opens payouts for every ACTIVE affiliate with payable
  commissions, when AUTO_PAYOUT_ENABLED is set.

Triggers:
- Interval jobs (via APScheduler)
"""
import logging
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growthdesk.config import settings
from growthdesk.jobs.tenant_job_runner import tenant_job
from growthdesk.models.affiliate import Affiliate, AffiliateStatus
from growthdesk.schemas.affiliate import BatchPayoutRequest
from growthdesk.services.affiliate_ledger_service import AffiliateLedgerService
from growthdesk.services.payout_service import PayoutService

logger = logging.getLogger(__name__)


@tenant_job("reconcile_affiliate_balances")
async def reconcile_affiliate_balances(session: AsyncSession, tenant: dict) -> Dict[str, Any]:
    ledger = AffiliateLedgerService(session, tenant["id"])
    drifting = await ledger.reconcile_all(fix=False)

    if drifting:
        logger.warning(
            f"Tenant '{tenant['subdomain']}': {len(drifting)} affiliates with balance drift"
        )
    return {
        "drifting": len(drifting),
        "affiliate_ids": [str(r.affiliate_id) for r in drifting],
    }


@tenant_job("process_scheduled_payouts")
async def process_scheduled_payouts(session: AsyncSession, tenant: dict) -> Dict[str, Any]:
    """Batch payouts for all ACTIVE affiliates of one tenant."""
    if not settings.AUTO_PAYOUT_ENABLED:
        logger.debug("Automatic payouts disabled, skipping")
        return {"skipped": True}

    result = await session.execute(
        select(Affiliate.id)
        .where(
            Affiliate.tenant_id == tenant["id"],
            Affiliate.status == AffiliateStatus.ACTIVE.value,
        )
        .order_by(Affiliate.created_at)
    )
    affiliate_ids = list(result.scalars().all())
    if not affiliate_ids:
        return {"created": 0, "payout_ids": []}

    service = PayoutService(session, tenant["id"])
    batch = await service.process_batch_payouts(
        BatchPayoutRequest(
            affiliate_ids=affiliate_ids,
            method=settings.AUTO_PAYOUT_METHOD,
            minimum_balance=settings.AUTO_PAYOUT_MINIMUM_BALANCE,
            notes="Scheduled payout",
        )
    )

    logger.info(
        f"Tenant '{tenant['subdomain']}': created {batch.created} scheduled payouts "
        f"for {len(affiliate_ids)} affiliates"
    )
    return {"created": batch.created, "payout_ids": [str(p) for p in batch.payout_ids]}
