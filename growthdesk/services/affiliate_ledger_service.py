"""
Affiliate Balance Ledger

The only code that moves an affiliate's ``total_earnings``, ``pending_balance``
and ``total_paid``. Each movement appends an ``AffiliateLedgerEntry`` in the
caller's transaction, so the denormalized totals can always be recomputed:

    EARNED    earnings +a   pending +a
    REVERSED  earnings -a   pending -a
    PAID                    pending -a   paid +a

Invariant: pending_balance == total_earnings - total_paid.

Record methods flush but never commit; the calling service owns the
transaction.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select

from growthdesk.core.tenant_context import TenantScopedService
from growthdesk.models.affiliate import (
    Affiliate,
    AffiliateLedgerEntry,
    Commission,
    LedgerEntryType,
)
from growthdesk.schemas.affiliate import ReconciliationReport

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# (earnings, pending, paid) sign per entry type
_DELTAS = {
    LedgerEntryType.EARNED: (1, 1, 0),
    LedgerEntryType.REVERSED: (-1, -1, 0),
    LedgerEntryType.PAID: (0, -1, 1),
}


class AffiliateLedgerService(TenantScopedService):
    """Append-only balance ledger for one tenant's affiliates."""

    # ========================================================================
    # Recording
    # ========================================================================

    async def record_earned(self, affiliate: Affiliate, commission: Commission) -> AffiliateLedgerEntry:
        return await self._record(affiliate, commission, LedgerEntryType.EARNED)

    async def record_reversed(self, affiliate: Affiliate, commission: Commission) -> AffiliateLedgerEntry:
        return await self._record(affiliate, commission, LedgerEntryType.REVERSED)

    async def record_paid(
        self,
        affiliate: Affiliate,
        commission: Commission,
        payout_id: uuid.UUID,
    ) -> AffiliateLedgerEntry:
        return await self._record(affiliate, commission, LedgerEntryType.PAID, payout_id=payout_id)

    async def _record(
        self,
        affiliate: Affiliate,
        commission: Commission,
        entry_type: LedgerEntryType,
        payout_id: Optional[uuid.UUID] = None,
    ) -> AffiliateLedgerEntry:
        if affiliate.id != commission.affiliate_id or affiliate.tenant_id != self.tenant_id:
            raise ValueError(
                f"Commission {commission.id} does not belong to affiliate {affiliate.id}"
            )

        amount = commission.amount
        earnings_sign, pending_sign, paid_sign = _DELTAS[entry_type]
        entry = AffiliateLedgerEntry(
            tenant_id=self.tenant_id,
            affiliate_id=affiliate.id,
            commission_id=commission.id,
            payout_id=payout_id,
            entry_type=entry_type.value,
            amount=amount,
            earnings_delta=amount * earnings_sign,
            pending_delta=amount * pending_sign,
            paid_delta=amount * paid_sign,
            created_at=self.clock.now(),
        )
        self.db.add(entry)

        affiliate.total_earnings = (affiliate.total_earnings or ZERO) + entry.earnings_delta
        affiliate.pending_balance = (affiliate.pending_balance or ZERO) + entry.pending_delta
        affiliate.total_paid = (affiliate.total_paid or ZERO) + entry.paid_delta

        # Flush surfaces a stale affiliate version or a duplicate movement here
        await self.db.flush()

        logger.debug(
            f"Ledger {entry_type.value} {amount} for affiliate {affiliate.affiliate_code} "
            f"(commission {commission.id})"
        )
        return entry

    # ========================================================================
    # Reading / reconciliation
    # ========================================================================

    async def get_entries(self, affiliate_id: uuid.UUID) -> List[AffiliateLedgerEntry]:
        result = await self.db.execute(
            self._scoped(AffiliateLedgerEntry)
            .where(AffiliateLedgerEntry.affiliate_id == affiliate_id)
            .order_by(AffiliateLedgerEntry.created_at.asc())
        )
        return list(result.scalars().all())

    async def fold(self, affiliate_id: uuid.UUID) -> tuple:
        """Sum an affiliate's entries into (earnings, pending, paid)."""
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(AffiliateLedgerEntry.earnings_delta), 0),
                func.coalesce(func.sum(AffiliateLedgerEntry.pending_delta), 0),
                func.coalesce(func.sum(AffiliateLedgerEntry.paid_delta), 0),
            ).where(
                AffiliateLedgerEntry.tenant_id == self.tenant_id,
                AffiliateLedgerEntry.affiliate_id == affiliate_id,
            )
        )
        row = result.one()
        return tuple(Decimal(str(v)).quantize(Decimal("0.01")) for v in row)

    async def reconcile(self, affiliate_id: uuid.UUID, fix: bool = False) -> ReconciliationReport:
        """
        Compare an affiliate's totals with its folded ledger.

        Args:
            affiliate_id: Affiliate to check
            fix: Rewrite the totals from the ledger when they drift

        Returns:
            ReconciliationReport (values before any fix)

        Raises:
            NotFoundError: If the affiliate doesn't exist for this tenant
        """
        affiliate = await self._get_or_raise(Affiliate, affiliate_id)
        report = await self._reconcile_one(affiliate, fix)
        if report.fixed:
            await self.db.commit()
        return report

    async def reconcile_all(self, fix: bool = False) -> List[ReconciliationReport]:
        """Reconcile every affiliate of the tenant. Returns only drifting affiliates."""
        result = await self.db.execute(self._scoped(Affiliate).order_by(Affiliate.created_at))
        drifting = []
        for affiliate in result.scalars().all():
            report = await self._reconcile_one(affiliate, fix)
            if not report.is_consistent:
                drifting.append(report)
        if fix and drifting:
            await self.db.commit()
        logger.info(
            f"Reconciled affiliates for tenant {self.tenant_id}: {len(drifting)} drifting"
        )
        return drifting

    async def _reconcile_one(self, affiliate: Affiliate, fix: bool) -> ReconciliationReport:
        earnings, pending, paid = await self.fold(affiliate.id)
        report = ReconciliationReport(
            affiliate_id=affiliate.id,
            ledger_earnings=earnings,
            ledger_pending=pending,
            ledger_paid=paid,
            recorded_earnings=affiliate.total_earnings,
            recorded_pending=affiliate.pending_balance,
            recorded_paid=affiliate.total_paid,
        )
        if report.is_consistent:
            return report

        logger.warning(
            f"Balance drift for affiliate {affiliate.affiliate_code}: "
            f"earnings {report.recorded_earnings} vs ledger {earnings}, "
            f"pending {report.recorded_pending} vs ledger {pending}, "
            f"paid {report.recorded_paid} vs ledger {paid}"
        )
        if fix:
            affiliate.total_earnings = earnings
            affiliate.pending_balance = pending
            affiliate.total_paid = paid
            await self.db.flush()
            report.fixed = True
        return report
