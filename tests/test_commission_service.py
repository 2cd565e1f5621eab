import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from growthdesk.core.exceptions import InvalidStateTransitionError, NotFoundError
from growthdesk.models import CommissionStatus
from growthdesk.schemas.affiliate import ClickCreate
from growthdesk.services.commission_service import CommissionService, calculate_commission_amount


@pytest.fixture
def service(db, tenant, clock):
    return CommissionService(db, tenant.id, clock)


class TestCalculateCommissionAmount:

    def test_percentage_of_order(self):
        assert calculate_commission_amount(Decimal("1000"), Decimal("10")) == Decimal("100.00")

    def test_rounds_half_even(self):
        # 2.50 * 5% = 0.125 -> 0.12, 7.50 * 5% = 0.375 -> 0.38
        assert calculate_commission_amount(Decimal("2.50"), Decimal("5")) == Decimal("0.12")
        assert calculate_commission_amount(Decimal("7.50"), Decimal("5")) == Decimal("0.38")

    def test_tier_sum_within_a_cent_of_exact(self):
        order = Decimal("333.33")
        rates = [Decimal("12.5"), Decimal("7.25"), Decimal("3.33")]
        total = sum(calculate_commission_amount(order, r) for r in rates)
        exact = order * sum(rates) / 100
        assert abs(total - exact) <= Decimal("0.015")


class TestMultiTierFanOut:

    @pytest.mark.parametrize("length", [1, 2, 3])
    async def test_chain_of_length_l_pays_l_tiers(self, service, factory, length):
        plan = await factory.plan(tier1="10", tier2="5", tier3="2")
        chain = await factory.chain(length, plan)

        commissions = await service.create_multi_tier_commissions("ORD-1", Decimal("1000"), chain[0].id)

        assert [c.tier for c in commissions] == list(range(1, length + 1))
        assert [c.affiliate_id for c in commissions] == [a.id for a in chain]
        expected = [Decimal("100.00"), Decimal("50.00"), Decimal("20.00")][:length]
        assert [c.amount for c in commissions] == expected

    async def test_deeper_ancestors_are_never_paid(self, service, factory):
        plan = await factory.plan()
        chain = await factory.chain(5, plan)

        commissions = await service.create_multi_tier_commissions("ORD-2", Decimal("200"), chain[0].id)

        assert len(commissions) == 3
        paid = {c.affiliate_id for c in commissions}
        assert chain[3].id not in paid
        assert chain[4].id not in paid

    async def test_parent_cycle_stops_walk(self, service, factory, db):
        plan = await factory.plan()
        a = await factory.affiliate(plan=plan)
        b = await factory.affiliate(plan=plan, parent=a)
        a.parent_affiliate_id = b.id
        await db.commit()

        commissions = await service.create_multi_tier_commissions("ORD-3", Decimal("100"), b.id)

        assert [(c.affiliate_id, c.tier) for c in commissions] == [(b.id, 1), (a.id, 2)]

    async def test_zero_rate_tier_is_skipped(self, service, factory):
        plan = await factory.plan(tier1="10", tier2="0", tier3="2")
        chain = await factory.chain(3, plan)

        commissions = await service.create_multi_tier_commissions("ORD-4", Decimal("500"), chain[0].id)

        assert [c.tier for c in commissions] == [1, 3]
        assert all(c.amount > 0 for c in commissions)

    async def test_member_without_plan_is_skipped(self, service, factory):
        plan = await factory.plan()
        grandparent = await factory.affiliate(plan=plan)
        parent = await factory.affiliate(plan=None, parent=grandparent)
        leaf = await factory.affiliate(plan=plan, parent=parent)

        commissions = await service.create_multi_tier_commissions("ORD-5", Decimal("100"), leaf.id)

        assert [(c.affiliate_id, c.tier) for c in commissions] == [(leaf.id, 1), (grandparent.id, 3)]

    async def test_parent_earns_at_its_own_plan_rate(self, service, factory):
        plan_a = await factory.plan(tier1="10", tier2="0", tier3="0")
        plan_b = await factory.plan(tier1="0", tier2="5", tier3="0")
        b = await factory.affiliate(plan=plan_b)
        a = await factory.affiliate(plan=plan_a, parent=b)

        commissions = await service.create_multi_tier_commissions("ORD-1000", Decimal("1000"), a.id)

        assert len(commissions) == 2
        tier1, tier2 = commissions
        assert (tier1.affiliate_id, tier1.tier, tier1.amount) == (a.id, 1, Decimal("100.00"))
        assert (tier2.affiliate_id, tier2.tier, tier2.amount) == (b.id, 2, Decimal("50.00"))
        assert a.total_earnings == Decimal("100.00")
        assert a.pending_balance == Decimal("100.00")
        assert b.total_earnings == Decimal("50.00")
        assert b.pending_balance == Decimal("50.00")

    async def test_hold_period_sets_payable_at(self, service, factory, clock):
        plan = await factory.plan(hold_days=14)
        affiliate = await factory.affiliate(plan=plan)

        [commission] = await service.create_multi_tier_commissions("ORD-6", Decimal("10"), affiliate.id)

        assert commission.payable_at == clock.now() + timedelta(days=14)

    async def test_no_hold_period_is_payable_immediately(self, service, factory):
        plan = await factory.plan(hold_days=0)
        affiliate = await factory.affiliate(plan=plan)

        [commission] = await service.create_multi_tier_commissions("ORD-7", Decimal("10"), affiliate.id)

        assert commission.payable_at is None

    async def test_unknown_originator(self, service):
        with pytest.raises(NotFoundError):
            await service.create_multi_tier_commissions("ORD-8", Decimal("10"), uuid.uuid4())


class TestCreateCommission:

    async def test_rejects_non_positive_order_amount(self, service, factory, db):
        plan = await factory.plan()
        affiliate = await factory.affiliate(plan=plan)

        with pytest.raises(ValueError):
            await service.create_commission(affiliate.id, Decimal("0"), Decimal("10"))

        await db.refresh(affiliate)
        assert affiliate.total_earnings == Decimal("0")

    async def test_rejects_rate_above_hundred(self, service, factory):
        affiliate = await factory.affiliate(plan=await factory.plan())

        with pytest.raises(ValueError):
            await service.create_commission(affiliate.id, Decimal("100"), Decimal("150"))


class TestTransitions:

    async def _commission(self, service, factory, amount="100"):
        affiliate = await factory.affiliate(plan=await factory.plan())
        commission = await service.create_commission(affiliate.id, Decimal(amount), Decimal("10"), order_id="ORD")
        return affiliate, commission

    async def test_reject_reverses_creation(self, service, factory):
        affiliate, commission = await self._commission(service, factory)
        assert affiliate.pending_balance == Decimal("10.00")

        await service.reject(commission.id, "fraudulent order")

        assert commission.status == CommissionStatus.REJECTED.value
        assert commission.rejection_reason == "fraudulent order"
        assert affiliate.total_earnings == Decimal("0.00")
        assert affiliate.pending_balance == Decimal("0.00")

    async def test_approve_then_mark_paid_moves_pending_to_paid(self, service, factory, clock):
        affiliate, commission = await self._commission(service, factory)
        payout_id = uuid.uuid4()

        await service.approve(commission.id)
        assert affiliate.pending_balance == Decimal("10.00")

        await service.mark_paid(commission.id, payout_id)

        assert commission.status == CommissionStatus.PAID.value
        assert commission.payout_id == payout_id
        assert commission.paid_at == clock.now()
        assert affiliate.total_earnings == Decimal("10.00")
        assert affiliate.pending_balance == Decimal("0.00")
        assert affiliate.total_paid == Decimal("10.00")

    async def test_approve_requires_pending(self, service, factory):
        _, commission = await self._commission(service, factory)
        await service.approve(commission.id)

        with pytest.raises(InvalidStateTransitionError):
            await service.approve(commission.id)

    async def test_reject_requires_pending(self, service, factory):
        affiliate, commission = await self._commission(service, factory)
        await service.approve(commission.id)

        with pytest.raises(InvalidStateTransitionError):
            await service.reject(commission.id, "too late")
        assert affiliate.pending_balance == Decimal("10.00")

    async def test_mark_paid_requires_approved(self, service, factory):
        affiliate, commission = await self._commission(service, factory)

        with pytest.raises(InvalidStateTransitionError):
            await service.mark_paid(commission.id, uuid.uuid4())
        assert affiliate.total_paid == Decimal("0")

    async def test_refund_reverses_approved_commission(self, service, factory):
        affiliate, commission = await self._commission(service, factory)
        await service.approve(commission.id)

        await service.refund(commission.id, "chargeback")

        assert commission.status == CommissionStatus.REFUNDED.value
        assert affiliate.total_earnings == Decimal("0.00")
        assert affiliate.pending_balance == Decimal("0.00")

    async def test_other_tenant_cannot_see_commission(self, db, clock, service, factory):
        _, commission = await self._commission(service, factory)
        other = CommissionService(db, uuid.uuid4(), clock)

        with pytest.raises(NotFoundError):
            await other.approve(commission.id)


class TestPayableCommissions:

    async def test_hold_period_gates_payability(self, service, factory, clock):
        affiliate = await factory.affiliate(plan=await factory.plan(hold_days=30))
        commission = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        await service.approve(commission.id)

        assert await service.get_payable_commissions(affiliate.id) == []

        clock.advance(days=30)
        assert [c.id for c in await service.get_payable_commissions(affiliate.id)] == [commission.id]

    async def test_only_approved_are_payable(self, service, factory):
        affiliate = await factory.affiliate(plan=await factory.plan())
        pending = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        rejected = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        approved = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        await service.reject(rejected.id, "dup")
        await service.approve(approved.id)

        payable = await service.get_payable_commissions(affiliate.id)

        assert [c.id for c in payable] == [approved.id]
        assert pending.id not in {c.id for c in payable}

    async def test_oldest_first(self, service, factory, clock):
        affiliate = await factory.affiliate(plan=await factory.plan())
        older = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        clock.advance(hours=1)
        newer = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        await service.approve(newer.id)
        await service.approve(older.id)

        payable = await service.get_payable_commissions(affiliate.id)

        assert [c.id for c in payable] == [older.id, newer.id]

    async def test_pending_commissions_include_approved(self, service, factory):
        affiliate = await factory.affiliate(plan=await factory.plan())
        first = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        second = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        third = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        await service.approve(second.id)
        await service.reject(third.id, "dup")

        pending = await service.get_pending_commissions(affiliate.id)

        assert {c.id for c in pending} == {first.id, second.id}


class TestOrderFlow:

    async def test_order_is_attributed_and_click_converted(self, service, factory, db):
        plan = await factory.plan(tier1="10", tier2="5", tier3="0")
        parent = await factory.affiliate(plan=plan)
        affiliate = await factory.affiliate(plan=plan, parent=parent, code="PARTNER")
        click = await service.tracking.track_click(ClickCreate(affiliate_code="PARTNER"))

        commissions = await service.create_commissions_for_order("ORD-9", Decimal("80"), click.visitor_id)

        assert [(c.affiliate_id, c.amount) for c in commissions] == [
            (affiliate.id, Decimal("8.00")),
            (parent.id, Decimal("4.00")),
        ]
        await db.refresh(affiliate)
        assert affiliate.total_conversions == 1
        assert affiliate.conversion_rate == Decimal("100.00")

        # The click is spent, a second order from the same visitor is unattributed
        assert await service.create_commissions_for_order("ORD-10", Decimal("80"), click.visitor_id) == []

    async def test_unknown_visitor_creates_nothing(self, service):
        assert await service.create_commissions_for_order("ORD-11", Decimal("80"), "nobody") == []


class TestStats:

    async def test_sums_by_status(self, service, factory):
        affiliate = await factory.affiliate(plan=await factory.plan())
        a = await service.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        b = await service.create_commission(affiliate.id, Decimal("200"), Decimal("10"))
        await service.create_commission(affiliate.id, Decimal("300"), Decimal("10"))
        await service.approve(a.id)
        await service.reject(b.id, "dup")

        stats = await service.get_stats(affiliate.id)

        assert stats.total_count == 3
        assert stats.total_amount == Decimal("60.00")
        assert stats.approved_amount == Decimal("10.00")
        assert stats.rejected_amount == Decimal("20.00")
        assert stats.pending_amount == Decimal("30.00")
        assert stats.paid_amount == Decimal("0.00")
