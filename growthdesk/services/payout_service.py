"""
Payout Service

Pays affiliates their payable commissions:
- Payout requests gated by the plan's minimum payout
- Exclusive claiming of commissions so no commission is paid twice
- Completion, failure and cancellation of pending payouts
- Batch payouts with per-affiliate outcomes
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from growthdesk.config import settings
from growthdesk.core.enum_utils import get_enum_value, to_enum
from growthdesk.core.exceptions import (
    ConcurrentModificationError,
    GrowthdeskError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NoPayableCommissionsError,
    PayoutConsistencyError,
)
from growthdesk.core.tenant_context import TenantScopedService
from growthdesk.models.affiliate import (
    Affiliate,
    Commission,
    CommissionStatus,
    Payout,
    PayoutMethod,
    PayoutStatus,
)
from growthdesk.schemas.affiliate import (
    BatchItemStatus,
    BatchPayoutOutcome,
    BatchPayoutRequest,
    BatchPayoutResult,
    PayoutRequest,
    PayoutStats,
)
from growthdesk.services.commission_service import CommissionService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class PayoutService(TenantScopedService):
    """Service for affiliate payouts of one tenant."""

    def __init__(self, db, tenant_id, clock=None):
        super().__init__(db, tenant_id, clock)
        self.commissions = CommissionService(db, tenant_id, self.clock)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def minimum_payout(self, affiliate: Affiliate) -> Decimal:
        plan = await self.commissions.tracking.get_plan(affiliate)
        if plan and plan.minimum_payout is not None:
            return plan.minimum_payout
        return settings.DEFAULT_MINIMUM_PAYOUT

    def _resolve_method(self, affiliate: Affiliate, requested) -> str:
        method = to_enum(requested, PayoutMethod)
        if method is None:
            method = to_enum((affiliate.payment_info or {}).get("method"), PayoutMethod)
        return (method or PayoutMethod.MANUAL).value

    async def _open_payout(
        self,
        affiliate: Affiliate,
        commissions: List[Commission],
        method: str,
        payment_details: dict,
        notes: Optional[str] = None,
    ) -> Payout:
        """
        Create a PENDING payout over ``commissions`` and claim them for it.

        Touching the affiliate bumps its version, so a concurrent request for
        the same affiliate fails at flush. Each commission is claimed only if
        it is still APPROVED and unclaimed; any miss aborts the payout.
        Caller owns the transaction.
        """
        now = self.clock.now()
        payout = Payout(
            tenant_id=self.tenant_id,
            affiliate_id=affiliate.id,
            amount=sum((c.amount for c in commissions), Decimal("0.00")).quantize(CENT),
            status=PayoutStatus.PENDING.value,
            method=method,
            payment_details=payment_details,
            commission_ids=[str(c.id) for c in commissions],
            commission_count=len(commissions),
            notes=notes,
            created_at=now,
        )
        self.db.add(payout)
        affiliate.last_payout_requested_at = now
        await self.db.flush()

        claim = await self.db.execute(
            update(Commission)
            .where(
                Commission.tenant_id == self.tenant_id,
                Commission.affiliate_id == affiliate.id,
                Commission.id.in_([c.id for c in commissions]),
                Commission.status == CommissionStatus.APPROVED.value,
                Commission.payout_id.is_(None),
            )
            .values(payout_id=payout.id)
            .execution_options(synchronize_session="evaluate")
        )
        if claim.rowcount != len(commissions):
            raise ConcurrentModificationError(
                f"Only {claim.rowcount} of {len(commissions)} commissions could be claimed "
                f"for affiliate {affiliate.affiliate_code}; another payout got there first"
            )
        return payout

    async def _release_claims(self, payout: Payout) -> int:
        """Unclaim commissions a dead payout was holding."""
        result = await self.db.execute(
            update(Commission)
            .where(
                Commission.tenant_id == self.tenant_id,
                Commission.payout_id == payout.id,
                Commission.status != CommissionStatus.PAID.value,
            )
            .values(payout_id=None)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount

    # ========================================================================
    # Requests
    # ========================================================================

    async def request_payout(self, affiliate_id: uuid.UUID, request: Optional[PayoutRequest] = None) -> Payout:
        """
        Pay out an affiliate's payable commissions.

        The payout amount is the sum of the commissions payable right now;
        commissions approved later are left for the next payout.

        Raises:
            NotFoundError: If the affiliate doesn't exist for this tenant
            InsufficientBalanceError: If the pending balance is below the plan minimum
            NoPayableCommissionsError: If nothing is payable
            ConcurrentModificationError: If another payout claimed the commissions first
        """
        request = request or PayoutRequest()
        affiliate = await self._get_or_raise(Affiliate, affiliate_id)

        minimum = await self.minimum_payout(affiliate)
        if affiliate.pending_balance < minimum:
            raise InsufficientBalanceError(affiliate.pending_balance, minimum)

        payable = await self.commissions.get_payable_commissions(affiliate_id)
        if not payable:
            raise NoPayableCommissionsError(affiliate_id)

        method = self._resolve_method(affiliate, request.method)
        details = {**(affiliate.payment_info or {}), **(request.payment_details or {})}

        async with self.unit_of_work(f"Affiliate {affiliate_id}"):
            payout = await self._open_payout(affiliate, payable, method, details, request.notes)

        logger.info(
            f"Affiliate {affiliate.affiliate_code} requested payout of {payout.amount} "
            f"({payout.commission_count} commissions)"
        )
        return payout

    async def create_payout(
        self,
        affiliate_id: uuid.UUID,
        commission_ids: List[uuid.UUID],
        method=None,
        payment_details: Optional[dict] = None,
        notes: Optional[str] = None,
    ) -> Payout:
        """
        Admin-entered payout over a chosen subset of payable commissions.

        No minimum applies, but every commission must currently be payable
        for this affiliate.

        Raises:
            NoPayableCommissionsError: If ``commission_ids`` is empty
            InvalidStateTransitionError: If a listed commission is not payable
        """
        affiliate = await self._get_or_raise(Affiliate, affiliate_id)
        if not commission_ids:
            raise NoPayableCommissionsError(affiliate_id)

        payable = {c.id: c for c in await self.commissions.get_payable_commissions(affiliate_id)}
        not_payable = [cid for cid in commission_ids if cid not in payable]
        if not_payable:
            raise InvalidStateTransitionError(
                "Commission",
                "NOT_PAYABLE",
                "CLAIMED",
                message=f"Commissions not payable for affiliate {affiliate_id}: "
                        f"{', '.join(str(c) for c in not_payable)}",
            )

        selected = [payable[cid] for cid in commission_ids]
        details = {**(affiliate.payment_info or {}), **(payment_details or {})}

        async with self.unit_of_work(f"Affiliate {affiliate_id}"):
            payout = await self._open_payout(
                affiliate, selected, self._resolve_method(affiliate, method), details, notes
            )

        logger.info(f"Created payout {payout.id} of {payout.amount} for affiliate {affiliate.affiliate_code}")
        return payout

    # ========================================================================
    # Transitions
    # ========================================================================

    async def get_payout(self, payout_id: uuid.UUID) -> Payout:
        return await self._get_or_raise(Payout, payout_id)

    def _require_pending(self, payout: Payout, target: PayoutStatus):
        if payout.status != PayoutStatus.PENDING.value:
            raise InvalidStateTransitionError(
                "Payout",
                payout.status,
                target.value,
                message=f"Only pending payouts can be moved to {target.value}",
            )

    async def process_payout(
        self,
        payout_id: uuid.UUID,
        transaction_id: Optional[str] = None,
        payment_details: Optional[dict] = None,
    ) -> Payout:
        """
        Complete a pending payout and mark all its commissions PAID.

        All or nothing: if any commission in the snapshot is no longer
        APPROVED or is no longer claimed by this payout, nothing changes and
        PayoutConsistencyError is raised. The payout stays PENDING so it can
        be cancelled (releasing its claims) and re-requested.

        Raises:
            InvalidStateTransitionError: If the payout is not PENDING
            PayoutConsistencyError: If the commission snapshot cannot be paid as a whole
        """
        payout = await self._get_or_raise(Payout, payout_id, for_update=True)
        self._require_pending(payout, PayoutStatus.COMPLETED)

        snapshot_ids = [uuid.UUID(str(cid)) for cid in payout.commission_ids or []]
        result = await self.db.execute(
            self._scoped(Commission).where(Commission.id.in_(snapshot_ids))
        )
        by_id = {c.id: c for c in result.scalars().all()}

        unpayable = [
            cid for cid in snapshot_ids
            if cid not in by_id
            or by_id[cid].status != CommissionStatus.APPROVED.value
            or by_id[cid].payout_id != payout.id
        ]
        if unpayable:
            logger.warning(
                f"Payout {payout.id} not processed: {len(unpayable)} of {len(snapshot_ids)} "
                f"commissions are no longer payable by it"
            )
            raise PayoutConsistencyError(payout.id, unpayable)

        affiliate = await self._get_or_raise(Affiliate, payout.affiliate_id)
        now = self.clock.now()

        async with self.unit_of_work(f"Affiliate {payout.affiliate_id}"):
            payout.status = PayoutStatus.COMPLETED.value
            payout.processed_at = now
            payout.completed_at = now
            details = dict(payout.payment_details or {})
            if transaction_id:
                details["transaction_id"] = transaction_id
            if payment_details:
                details.update(payment_details)
            payout.payment_details = details

            for cid in snapshot_ids:
                await self.commissions._mark_paid(by_id[cid], payout.id, affiliate)

            affiliate.last_payout_at = now

        logger.info(f"Processed payout {payout_id}: {len(snapshot_ids)} commissions paid")
        return payout

    async def fail_payout(self, payout_id: uuid.UUID, reason: str) -> Payout:
        """PENDING -> FAILED. Claimed commissions become payable again."""
        payout = await self._get_or_raise(Payout, payout_id, for_update=True)
        self._require_pending(payout, PayoutStatus.FAILED)

        async with self.unit_of_work(f"Payout {payout_id}"):
            payout.status = PayoutStatus.FAILED.value
            payout.failure_reason = reason
            payout.processed_at = self.clock.now()
            released = await self._release_claims(payout)

        logger.info(f"Failed payout {payout_id}: {reason} ({released} commissions released)")
        return payout

    async def cancel_payout(self, payout_id: uuid.UUID) -> Payout:
        """PENDING -> CANCELLED. Claimed commissions become payable again."""
        payout = await self._get_or_raise(Payout, payout_id, for_update=True)
        self._require_pending(payout, PayoutStatus.CANCELLED)

        async with self.unit_of_work(f"Payout {payout_id}"):
            payout.status = PayoutStatus.CANCELLED.value
            released = await self._release_claims(payout)

        logger.info(f"Cancelled payout {payout_id} ({released} commissions released)")
        return payout

    # ========================================================================
    # Batch
    # ========================================================================

    async def process_batch_payouts(self, batch: BatchPayoutRequest) -> BatchPayoutResult:
        """
        Open payouts for many affiliates, each independently.

        Affiliates that are missing, below ``minimum_balance`` or without
        payable commissions are skipped. A failure for one affiliate is
        logged and recorded without affecting the others.
        """
        result = BatchPayoutResult()
        method = get_enum_value(batch.method)

        for affiliate_id in batch.affiliate_ids:
            try:
                outcome = await self._batch_payout_for(affiliate_id, batch, method)
            except (GrowthdeskError, SQLAlchemyError) as e:
                await self.db.rollback()
                logger.error(f"Batch payout failed for affiliate {affiliate_id}: {e}")
                outcome = BatchPayoutOutcome(
                    affiliate_id=affiliate_id,
                    status=BatchItemStatus.FAILED,
                    reason=str(e),
                )

            result.outcomes.append(outcome)
            if outcome.status == BatchItemStatus.CREATED:
                result.payout_ids.append(outcome.payout_id)

        logger.info(
            f"Created {result.created} payouts in batch for {len(batch.affiliate_ids)} affiliates"
        )
        return result

    async def _batch_payout_for(
        self,
        affiliate_id: uuid.UUID,
        batch: BatchPayoutRequest,
        method: str,
    ) -> BatchPayoutOutcome:
        affiliate = await self._get(Affiliate, affiliate_id)
        if not affiliate:
            logger.warning(f"Affiliate {affiliate_id} not found, skipping")
            return BatchPayoutOutcome(
                affiliate_id=affiliate_id, status=BatchItemStatus.SKIPPED, reason="affiliate not found"
            )

        if affiliate.pending_balance < batch.minimum_balance:
            logger.debug(
                f"Affiliate {affiliate.affiliate_code} balance {affiliate.pending_balance} "
                f"below minimum {batch.minimum_balance}, skipping"
            )
            return BatchPayoutOutcome(
                affiliate_id=affiliate_id, status=BatchItemStatus.SKIPPED, reason="below minimum balance"
            )

        payable = await self.commissions.get_payable_commissions(affiliate_id)
        if not payable:
            logger.debug(f"No payable commissions for affiliate {affiliate.affiliate_code}, skipping")
            return BatchPayoutOutcome(
                affiliate_id=affiliate_id, status=BatchItemStatus.SKIPPED, reason="no payable commissions"
            )

        async with self.unit_of_work(f"Affiliate {affiliate_id}"):
            payout = await self._open_payout(
                affiliate, payable, method, dict(affiliate.payment_info or {}), batch.notes
            )

        return BatchPayoutOutcome(
            affiliate_id=affiliate_id,
            status=BatchItemStatus.CREATED,
            payout_id=payout.id,
            amount=payout.amount,
        )

    # ========================================================================
    # Statistics
    # ========================================================================

    async def get_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> PayoutStats:
        filters = [Payout.tenant_id == self.tenant_id]
        if start_date:
            filters.append(Payout.created_at >= start_date)
        if end_date:
            filters.append(Payout.created_at <= end_date)

        result = await self.db.execute(
            select(Payout.status, func.count(Payout.id), func.coalesce(func.sum(Payout.amount), 0))
            .where(*filters)
            .group_by(Payout.status)
        )

        stats = PayoutStats()
        for status, count, total in result.all():
            amount = Decimal(str(total)).quantize(CENT)
            stats.total_count += count
            stats.total_amount += amount
            field = f"{status.lower()}_amount"
            if hasattr(stats, field):
                setattr(stats, field, amount)
        return stats
