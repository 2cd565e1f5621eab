import uuid

import pytest

from growthdesk.core.tenant_context import (
    NoTenantContextError,
    TenantInactiveError,
    TenantNotFoundError,
    tenant_db_context,
)
from growthdesk.models import Tenant
from growthdesk.services.commission_service import CommissionService


class TestTenantDbContext:

    async def test_yields_session_and_tenant(self, session_factory, tenant):
        async with tenant_db_context(tenant.id, session_factory=session_factory) as (session, info):
            assert info["subdomain"] == "acme"
            assert info["id"] == tenant.id
            assert session is not None

    async def test_unknown_tenant(self, session_factory):
        with pytest.raises(TenantNotFoundError):
            async with tenant_db_context(uuid.uuid4(), session_factory=session_factory):
                pass

    async def test_inactive_tenant(self, session_factory, db):
        dormant = Tenant(name="Dormant", subdomain="dormant", status="suspended")
        db.add(dormant)
        await db.commit()

        with pytest.raises(TenantInactiveError) as exc_info:
            async with tenant_db_context(dormant.id, session_factory=session_factory):
                pass
        assert exc_info.value.status_code == 403

        async with tenant_db_context(dormant.id, verify_active=False, session_factory=session_factory) as (_, info):
            assert info["status"] == "suspended"


class TestTenantScopedService:

    def test_requires_tenant(self, db):
        with pytest.raises(NoTenantContextError):
            CommissionService(db, None)
