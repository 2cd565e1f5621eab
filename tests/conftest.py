"""Shared fixtures: in-memory database, frozen clock, recording mail backend, factories."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from growthdesk.core.clock import FrozenClock
from growthdesk.core.exceptions import EmailDeliveryError
from growthdesk.database import build_engine, init_db, make_session_factory
from growthdesk.models import (
    Affiliate,
    AffiliateStatus,
    CommissionPlan,
    Contact,
    ContactStatus,
    SequenceStatus,
    Tenant,
)
from growthdesk.schemas.email_sequence import EmailSequenceCreate, SequenceStepCreate

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class RecordingEmailBackend:
    """Delivery backend that records messages instead of sending them."""

    def __init__(self):
        self.sent: List[dict] = []
        self.failing_recipients = set()

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        from_name: Optional[str] = None,
        from_email: Optional[str] = None,
    ) -> str:
        if recipient in self.failing_recipients:
            raise EmailDeliveryError(f"Mailbox unavailable: {recipient}")
        self.sent.append({
            "recipient": recipient,
            "subject": subject,
            "html": html_body,
            "text": text_body,
            "from_name": from_name,
        })
        return f"<msg-{len(self.sent)}@test.local>"


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def mailer():
    return RecordingEmailBackend()


class Factory:
    """Creates committed rows for one tenant."""

    def __init__(self, db: AsyncSession, tenant_id: uuid.UUID):
        self.db = db
        self.tenant_id = tenant_id
        self._codes = 0

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def plan(
        self,
        tier1="10",
        tier2="5",
        tier3="2",
        hold_days=0,
        cookie_days=30,
        minimum_payout: Optional[str] = None,
    ) -> CommissionPlan:
        return await self._save(CommissionPlan(
            tenant_id=self.tenant_id,
            name=f"Plan {tier1}/{tier2}/{tier3}",
            tier1_rate=Decimal(tier1),
            tier2_rate=Decimal(tier2),
            tier3_rate=Decimal(tier3),
            commission_hold_days=hold_days,
            cookie_duration_days=cookie_days,
            minimum_payout=Decimal(minimum_payout) if minimum_payout is not None else None,
        ))

    async def affiliate(
        self,
        plan: Optional[CommissionPlan] = None,
        parent: Optional[Affiliate] = None,
        status: AffiliateStatus = AffiliateStatus.ACTIVE,
        code: Optional[str] = None,
        payment_info: Optional[dict] = None,
    ) -> Affiliate:
        self._codes += 1
        return await self._save(Affiliate(
            tenant_id=self.tenant_id,
            affiliate_code=code or f"AFF{self._codes:03d}",
            name=f"Affiliate {self._codes}",
            commission_plan_id=plan.id if plan else None,
            parent_affiliate_id=parent.id if parent else None,
            status=status.value,
            payment_info=payment_info or {},
        ))

    async def chain(self, length: int, plan: CommissionPlan) -> List[Affiliate]:
        """Returns [leaf, parent, grandparent, ...] sharing one plan."""
        members: List[Affiliate] = []
        parent = None
        for _ in range(length):
            parent = await self.affiliate(plan=plan, parent=parent)
            members.append(parent)
        return list(reversed(members))

    async def contact(
        self,
        email: Optional[str] = None,
        first_name: str = "Ada",
        last_name: str = "Lovelace",
        tags=None,
        status: ContactStatus = ContactStatus.ACTIVE,
    ) -> Contact:
        return await self._save(Contact(
            tenant_id=self.tenant_id,
            email=email or f"{uuid.uuid4().hex[:8]}@example.com",
            first_name=first_name,
            last_name=last_name,
            tags=list(tags or []),
            status=status.value,
        ))


@pytest_asyncio.fixture
async def tenant(db):
    tenant = Tenant(name="Acme", subdomain="acme", status="active")
    db.add(tenant)
    await db.commit()
    return tenant


@pytest.fixture
def factory(db, tenant):
    return Factory(db, tenant.id)


def step(subject="Step", delay_type="IMMEDIATE", delay_value=0, conditions=None, **kwargs) -> SequenceStepCreate:
    return SequenceStepCreate(
        subject=subject,
        html_content=kwargs.pop("html_content", f"<p>Hi {{{{first_name}}}}, {subject}</p>"),
        delay_type=delay_type,
        delay_value=delay_value,
        conditions=conditions or [],
        **kwargs,
    )


async def active_sequence(service, steps, **kwargs):
    """Create and activate a sequence through the service."""
    sequence = await service.create_sequence(
        EmailSequenceCreate(name=kwargs.pop("name", "Onboarding"), steps=steps, **kwargs)
    )
    sequence = await service.activate_sequence(sequence.id)
    assert sequence.status == SequenceStatus.ACTIVE.value
    return sequence
