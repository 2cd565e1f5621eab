"""
Commission Service

Business logic for affiliate commissions:
- Multi-tier fan-out of an order across the referral chain
- Approval, rejection, refund and payment transitions
- Payable selection (approved, hold period over, unclaimed) in FIFO order
- Per-status statistics
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, Optional

from sqlalchemy import func, or_, select

from growthdesk.core.exceptions import (
    ConcurrentModificationError,
    InvalidStateTransitionError,
)
from growthdesk.core.tenant_context import TenantScopedService
from growthdesk.models.affiliate import (
    Affiliate,
    Commission,
    CommissionPlan,
    CommissionStatus,
)
from growthdesk.schemas.affiliate import CommissionStats
from growthdesk.services.affiliate_ledger_service import AffiliateLedgerService
from growthdesk.services.affiliate_tracking_service import AffiliateTrackingService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def calculate_commission_amount(order_amount: Decimal, rate: Decimal) -> Decimal:
    """``order_amount * rate / 100`` rounded half-even to the cent."""
    return (Decimal(order_amount) * Decimal(rate) / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_EVEN)


class CommissionService(TenantScopedService):
    """Service for commission operations of one tenant."""

    def __init__(self, db, tenant_id, clock=None):
        super().__init__(db, tenant_id, clock)
        self.ledger = AffiliateLedgerService(db, tenant_id, self.clock)
        self.tracking = AffiliateTrackingService(db, tenant_id, self.clock)

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_commission(
        self,
        affiliate_id: uuid.UUID,
        order_amount: Decimal,
        rate: Decimal,
        tier: int = 1,
        order_id: Optional[str] = None,
        product_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Commission:
        """
        Create a single PENDING commission and credit the affiliate's balance.

        Raises:
            NotFoundError: If the affiliate doesn't exist for this tenant
            ValueError: On a non-positive order amount or rate outside [0, 100]
        """
        affiliate = await self._get_or_raise(Affiliate, affiliate_id)
        plan = await self.tracking.get_plan(affiliate)
        async with self.unit_of_work(f"Affiliate {affiliate_id}"):
            commission = await self._create_commission(
                affiliate, plan, Decimal(str(order_amount)), Decimal(str(rate)),
                tier, order_id, product_id, notes,
            )
        return commission

    async def _create_commission(
        self,
        affiliate: Affiliate,
        plan: Optional[CommissionPlan],
        order_amount: Decimal,
        rate: Decimal,
        tier: int,
        order_id: Optional[str],
        product_id: Optional[str],
        notes: Optional[str] = None,
    ) -> Commission:
        if order_amount <= 0:
            raise ValueError(f"Order amount must be positive, got {order_amount}")
        if rate < 0 or rate > 100:
            raise ValueError(f"Commission rate must be within 0-100, got {rate}")

        now = self.clock.now()
        payable_at = None
        if plan and plan.commission_hold_days:
            payable_at = now + timedelta(days=plan.commission_hold_days)

        commission = Commission(
            tenant_id=self.tenant_id,
            affiliate_id=affiliate.id,
            commission_plan_id=plan.id if plan else None,
            order_id=order_id,
            product_id=product_id,
            tier=tier,
            order_amount=order_amount,
            commission_rate=rate,
            amount=calculate_commission_amount(order_amount, rate),
            status=CommissionStatus.PENDING.value,
            payable_at=payable_at,
            notes=notes,
            created_at=now,
        )
        self.db.add(commission)
        await self.db.flush()

        await self.ledger.record_earned(affiliate, commission)

        logger.info(
            f"Created commission {commission.id} for affiliate {affiliate.affiliate_code}, "
            f"tier {tier}, amount: {commission.amount}"
        )
        return commission

    async def create_multi_tier_commissions(
        self,
        order_id: str,
        order_amount: Decimal,
        affiliate_id: uuid.UUID,
        product_id: Optional[str] = None,
    ) -> List[Commission]:
        """
        Fan an order out across the referral chain of ``affiliate_id``.

        Tier 1 is the attributed affiliate, tier 2 its parent, tier 3 the
        parent's parent. A tier whose affiliate has no plan, or whose plan
        rate for that tier is zero/unset, is skipped. All rows and balance
        movements commit together.

        Returns:
            Created commissions ordered by tier

        Raises:
            NotFoundError: If the originating affiliate doesn't exist
            ConcurrentModificationError: If a chain affiliate changed mid-operation
        """
        await self._get_or_raise(Affiliate, affiliate_id)
        async with self.unit_of_work(f"Referral chain of affiliate {affiliate_id}"):
            commissions = await self._create_multi_tier(
                order_id, Decimal(str(order_amount)), affiliate_id, product_id
            )
        return commissions

    async def _create_multi_tier(
        self,
        order_id: str,
        order_amount: Decimal,
        affiliate_id: uuid.UUID,
        product_id: Optional[str],
    ) -> List[Commission]:
        commissions: List[Commission] = []
        chain = await self.tracking.get_affiliate_chain(affiliate_id)

        for link in chain:
            affiliate = await self._get(Affiliate, link.affiliate_id)
            if not affiliate:
                continue
            plan = await self.tracking.get_plan(affiliate)
            if not plan:
                logger.debug(f"Tier {link.tier}: affiliate {affiliate.affiliate_code} has no plan, skipped")
                continue

            rate = plan.rate_for_tier(link.tier) or Decimal("0")
            if rate == 0:
                logger.debug(f"Tier {link.tier}: plan {plan.name} pays nothing, skipped")
                continue

            commission = await self._create_commission(
                affiliate, plan, order_amount, rate, link.tier, order_id, product_id
            )
            commissions.append(commission)

        logger.info(f"Created {len(commissions)} multi-tier commissions for order {order_id}")
        return commissions

    async def create_commissions_for_order(
        self,
        order_id: str,
        order_amount: Decimal,
        visitor_id: str,
        product_id: Optional[str] = None,
    ) -> List[Commission]:
        """
        Attribute an order to a visitor's referring affiliate and pay its chain.

        Marks the attributing click converted in the same transaction.

        Returns:
            Created commissions, empty when the visitor has no valid attribution
        """
        attribution = await self.tracking.get_attribution(visitor_id)
        if not attribution:
            logger.debug(f"Order {order_id}: no attribution for visitor {visitor_id}")
            return []

        async with self.unit_of_work(f"Referral chain of affiliate {attribution.affiliate_id}"):
            commissions = await self._create_multi_tier(
                order_id, Decimal(str(order_amount)), attribution.affiliate_id, product_id
            )
            await self.tracking._mark_converted(attribution.click_id, order_id)
        return commissions

    # ========================================================================
    # Transitions
    # ========================================================================

    async def get_commission(self, commission_id: uuid.UUID) -> Commission:
        return await self._get_or_raise(Commission, commission_id)

    def _require_status(self, commission: Commission, required: CommissionStatus, target: CommissionStatus):
        if commission.status != required.value:
            raise InvalidStateTransitionError(
                "Commission",
                commission.status,
                target.value,
                message=f"Only {required.value.lower()} commissions can be moved to {target.value}",
            )

    async def approve(self, commission_id: uuid.UUID, notes: Optional[str] = None) -> Commission:
        """
        PENDING -> APPROVED. Balances are unchanged.

        Raises:
            InvalidStateTransitionError: If the commission is not PENDING
            ConcurrentModificationError: If it changed since it was read, e.g. a concurrent reject
        """
        commission = await self.get_commission(commission_id)
        self._require_status(commission, CommissionStatus.PENDING, CommissionStatus.APPROVED)

        async with self.unit_of_work(f"Commission {commission_id}"):
            commission.status = CommissionStatus.APPROVED.value
            commission.approved_at = self.clock.now()
            if notes:
                commission.notes = notes
        logger.info(f"Approved commission {commission_id}")
        return commission

    async def reject(self, commission_id: uuid.UUID, reason: str) -> Commission:
        """PENDING -> REJECTED, reversing the earnings and pending balance."""
        commission = await self.get_commission(commission_id)
        self._require_status(commission, CommissionStatus.PENDING, CommissionStatus.REJECTED)
        await self._reverse(commission, CommissionStatus.REJECTED, reason)
        logger.info(f"Rejected commission {commission_id}: {reason}")
        return commission

    async def refund(self, commission_id: uuid.UUID, reason: str) -> Commission:
        """
        APPROVED -> REFUNDED, for an order refunded after approval.

        A payout that already claimed the commission will refuse to complete.
        """
        commission = await self.get_commission(commission_id)
        self._require_status(commission, CommissionStatus.APPROVED, CommissionStatus.REFUNDED)
        await self._reverse(commission, CommissionStatus.REFUNDED, reason)
        logger.info(f"Refunded commission {commission_id}: {reason}")
        return commission

    async def _reverse(self, commission: Commission, target: CommissionStatus, reason: str):
        affiliate = await self._get_or_raise(Affiliate, commission.affiliate_id)
        async with self.unit_of_work(f"Affiliate {affiliate.id}"):
            commission.status = target.value
            commission.rejection_reason = reason
            await self.ledger.record_reversed(affiliate, commission)

    async def mark_paid(self, commission_id: uuid.UUID, payout_id: uuid.UUID) -> Commission:
        """
        APPROVED -> PAID, moving the amount from pending balance to total paid.

        Raises:
            InvalidStateTransitionError: If the commission is not APPROVED
            ConcurrentModificationError: If another payout has claimed it
        """
        commission = await self.get_commission(commission_id)
        affiliate_id = commission.affiliate_id
        async with self.unit_of_work(f"Affiliate {affiliate_id}"):
            await self._mark_paid(commission, payout_id)
        return commission

    async def _mark_paid(
        self,
        commission: Commission,
        payout_id: uuid.UUID,
        affiliate: Optional[Affiliate] = None,
    ) -> Commission:
        self._require_status(commission, CommissionStatus.APPROVED, CommissionStatus.PAID)
        if commission.payout_id is not None and commission.payout_id != payout_id:
            raise ConcurrentModificationError(
                f"Commission {commission.id} is claimed by payout {commission.payout_id}"
            )

        if affiliate is None:
            affiliate = await self._get_or_raise(Affiliate, commission.affiliate_id)

        commission.status = CommissionStatus.PAID.value
        commission.payout_id = payout_id
        commission.paid_at = self.clock.now()
        await self.ledger.record_paid(affiliate, commission, payout_id)

        logger.info(f"Marked commission {commission.id} as paid in payout {payout_id}")
        return commission

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_pending_commissions(self, affiliate_id: uuid.UUID) -> List[Commission]:
        """PENDING and APPROVED commissions, oldest first."""
        result = await self.db.execute(
            self._scoped(Commission)
            .where(
                Commission.affiliate_id == affiliate_id,
                Commission.status.in_([CommissionStatus.PENDING.value, CommissionStatus.APPROVED.value]),
            )
            .order_by(Commission.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_payable_commissions(self, affiliate_id: uuid.UUID) -> List[Commission]:
        """
        Commissions ready to be paid out, oldest first.

        APPROVED, hold period over (``payable_at`` unset or not after now),
        and not claimed by a pending payout.
        """
        now = self.clock.now()
        result = await self.db.execute(
            self._scoped(Commission)
            .where(
                Commission.affiliate_id == affiliate_id,
                Commission.status == CommissionStatus.APPROVED.value,
                Commission.payout_id.is_(None),
                or_(Commission.payable_at.is_(None), Commission.payable_at <= now),
            )
            .order_by(Commission.created_at.asc(), Commission.tier.asc())
        )
        return list(result.scalars().all())

    async def get_stats(
        self,
        affiliate_id: Optional[uuid.UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> CommissionStats:
        filters = [Commission.tenant_id == self.tenant_id]
        if affiliate_id:
            filters.append(Commission.affiliate_id == affiliate_id)
        if start_date:
            filters.append(Commission.created_at >= start_date)
        if end_date:
            filters.append(Commission.created_at <= end_date)

        result = await self.db.execute(
            select(
                Commission.status,
                func.count(Commission.id),
                func.coalesce(func.sum(Commission.amount), 0),
            )
            .where(*filters)
            .group_by(Commission.status)
        )

        stats = CommissionStats()
        for status, count, total in result.all():
            amount = Decimal(str(total)).quantize(CENT)
            stats.total_count += count
            stats.total_amount += amount
            field = f"{status.lower()}_amount"
            if hasattr(stats, field):
                setattr(stats, field, amount)
        return stats
