"""
Tenant scoping for the engines.

Every tenant-owned row carries a ``tenant_id``. Services are constructed for
exactly one tenant and every statement they issue filters on it; there is no
code path that reads or writes another tenant's rows.

Usage Examples:

    # In a background job or script:
    async with tenant_db_context(tenant_id) as (session, tenant):
        service = CommissionService(session, tenant["id"])
        await service.approve(commission_id)

    # In a service:
    class CommissionService(TenantScopedService):
        async def approve(self, commission_id):
            commission = await self._get_or_raise(Commission, commission_id)
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from growthdesk.core.clock import Clock, system_clock
from growthdesk.core.exceptions import (
    ConcurrentModificationError,
    GrowthdeskError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

M = TypeVar("M")


class TenantNotFoundError(GrowthdeskError):
    """Raised when tenant cannot be found."""
    status_code = 404
    code = "TENANT_NOT_FOUND"


class TenantInactiveError(GrowthdeskError):
    """Raised when tenant is not active."""
    status_code = 403
    code = "TENANT_INACTIVE"


class NoTenantContextError(GrowthdeskError):
    """Raised when code requires tenant context but none is provided."""
    status_code = 400
    code = "NO_TENANT_CONTEXT"


def tenant_to_dict(tenant) -> dict:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "subdomain": tenant.subdomain,
        "status": tenant.status,
        "settings": tenant.settings or {},
    }


async def get_tenant_by_id(session: AsyncSession, tenant_id: uuid.UUID) -> dict:
    """
    Fetch tenant details by ID.

    Raises:
        TenantNotFoundError: If tenant doesn't exist
    """
    from growthdesk.models.tenant import Tenant

    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    tenant = result.scalar_one_or_none()
    if not tenant:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return tenant_to_dict(tenant)


@asynccontextmanager
async def tenant_db_context(
    tenant_id: uuid.UUID,
    verify_active: bool = True,
    session_factory=None,
):
    """
    Open a session bound to one tenant.

    Yields a ``(session, tenant)`` pair. Commits on clean exit, rolls back
    on error.

    Raises:
        TenantNotFoundError: If tenant doesn't exist
        TenantInactiveError: If tenant is not active and verify_active=True
    """
    if session_factory is None:
        from growthdesk.database import async_session_factory
        session_factory = async_session_factory

    async with session_factory() as session:
        tenant = await get_tenant_by_id(session, tenant_id)
        if verify_active and tenant["status"] != "active":
            raise TenantInactiveError(
                f"Tenant {tenant['subdomain']} is not active (status: {tenant['status']})"
            )
        try:
            yield session, tenant
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class TenantScopedService:
    """Base class for services bound to a single tenant."""

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: Optional[uuid.UUID],
        clock: Optional[Clock] = None,
    ):
        if tenant_id is None:
            raise NoTenantContextError(f"{type(self).__name__} requires a tenant_id")
        self.db = db
        self.tenant_id = tenant_id
        self.clock = clock or system_clock

    def _scoped(self, model: Type[M]):
        """SELECT for ``model`` restricted to this tenant."""
        return select(model).where(model.tenant_id == self.tenant_id)

    async def _get(self, model: Type[M], entity_id: uuid.UUID, for_update: bool = False) -> Optional[M]:
        query = self._scoped(model).where(model.id == entity_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _get_or_raise(self, model: Type[M], entity_id: uuid.UUID, for_update: bool = False) -> M:
        entity = await self._get(model, entity_id, for_update=for_update)
        if entity is None:
            raise NotFoundError(model.__name__, entity_id)
        return entity

    @asynccontextmanager
    async def unit_of_work(self, label: str = "Record"):
        """
        Commit everything done inside the block, or roll all of it back.

        A stale optimistic-lock version surfaces as ConcurrentModificationError.
        """
        try:
            yield
            await self.db.commit()
        except StaleDataError as e:
            await self.db.rollback()
            raise ConcurrentModificationError(
                f"{label} was modified concurrently, retry the operation"
            ) from e
        except Exception:
            await self.db.rollback()
            raise
