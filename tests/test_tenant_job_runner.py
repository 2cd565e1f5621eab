from decimal import Decimal

import pytest

from growthdesk.config import settings
from growthdesk.jobs import tenant_job_runner
from growthdesk.jobs.affiliate_jobs import process_scheduled_payouts, reconcile_affiliate_balances
from growthdesk.jobs.sequence_jobs import process_sequence_subscribers
from growthdesk.jobs.tenant_job_runner import TenantJobRunner, tenant_job
from growthdesk.models import Tenant
from growthdesk.services.commission_service import CommissionService


@pytest.fixture
def runner(session_factory):
    return TenantJobRunner(max_concurrent=1, session_factory=session_factory)


@pytest.fixture
def jobs(monkeypatch):
    """Isolated job registry."""
    registry = {}
    monkeypatch.setattr(tenant_job_runner, "_tenant_jobs", registry)
    return registry


async def add_tenant(db, subdomain, status="active"):
    tenant = Tenant(name=subdomain.title(), subdomain=subdomain, status=status)
    db.add(tenant)
    await db.commit()
    return tenant


class TestTenantJobRunner:

    async def test_runs_only_active_tenants(self, runner, jobs, db, tenant):
        await add_tenant(db, "dormant", status="suspended")
        seen = []

        @tenant_job("collect")
        async def collect(session, tenant_info):
            seen.append(tenant_info["subdomain"])
            return {"ok": True}

        summary = await runner.run_job("collect")

        assert seen == ["acme"]
        assert summary["tenant_count"] == 1
        assert summary["successful"] == 1
        assert summary["results"][0]["output"] == {"ok": True}

    async def test_one_tenant_failure_is_isolated(self, runner, jobs, db, tenant):
        await add_tenant(db, "beta")

        @tenant_job("flaky")
        async def flaky(session, tenant_info):
            if tenant_info["subdomain"] == "acme":
                raise RuntimeError("upstream timeout")
            return "done"

        summary = await runner.run_job("flaky")

        assert (summary["successful"], summary["failed"]) == (1, 1)
        by_tenant = {r["subdomain"]: r for r in summary["results"]}
        assert by_tenant["acme"]["status"] == "failed"
        assert by_tenant["acme"]["error"] == "upstream timeout"
        assert by_tenant["beta"]["output"] == "done"

    async def test_no_tenants(self, runner, jobs):
        @tenant_job("noop")
        async def noop(session, tenant_info):
            return None

        summary = await runner.run_job("noop")

        assert summary["status"] == "skipped"
        assert summary["tenant_count"] == 0

    async def test_unknown_job(self, runner, jobs):
        with pytest.raises(ValueError):
            await runner.run_job("missing")

    def test_registered_job_names(self):
        assert {
            "process_sequence_subscribers",
            "reconcile_affiliate_balances",
            "process_scheduled_payouts",
        } <= set(tenant_job_runner.registered_jobs())


class TestEngineJobs:

    async def test_sequence_tick_with_nothing_due(self, session_factory, tenant):
        async with session_factory() as session:
            output = await process_sequence_subscribers(session, {"id": tenant.id, "subdomain": "acme"})

        assert output["processed"] == 0

    async def test_reconcile_reports_drift(self, session_factory, tenant, factory, db):
        affiliate = await factory.affiliate(plan=await factory.plan())
        await CommissionService(db, tenant.id).create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        affiliate.total_earnings = Decimal("1.00")
        await db.commit()

        async with session_factory() as session:
            output = await reconcile_affiliate_balances(session, {"id": tenant.id, "subdomain": "acme"})

        assert output == {"drifting": 1, "affiliate_ids": [str(affiliate.id)]}

    async def test_scheduled_payouts_disabled(self, session_factory, tenant, monkeypatch):
        monkeypatch.setattr(settings, "AUTO_PAYOUT_ENABLED", False)

        async with session_factory() as session:
            output = await process_scheduled_payouts(session, {"id": tenant.id, "subdomain": "acme"})

        assert output == {"skipped": True}

    async def test_scheduled_payouts(self, session_factory, tenant, factory, db, monkeypatch):
        monkeypatch.setattr(settings, "AUTO_PAYOUT_ENABLED", True)
        affiliate = await factory.affiliate(plan=await factory.plan())
        await factory.affiliate(plan=await factory.plan())  # nothing payable, skipped
        commissions = CommissionService(db, tenant.id)
        commission = await commissions.create_commission(affiliate.id, Decimal("100"), Decimal("10"))
        await commissions.approve(commission.id)

        async with session_factory() as session:
            output = await process_scheduled_payouts(session, {"id": tenant.id, "subdomain": "acme"})

        assert output["created"] == 1
        assert len(output["payout_ids"]) == 1
