"""Affiliate program models.

Affiliates refer orders through tracked clicks and earn commissions on up to
three tiers of their referral chain (the affiliate, its parent, and the
parent's parent). Commissions are paid out in batches.

Balance fields on ``Affiliate`` are denormalized totals. They are only ever
moved by ``AffiliateLedgerService``, which appends an ``AffiliateLedgerEntry``
for each movement so the totals can be recomputed and checked.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Boolean, ForeignKey, Integer, Text,
    Numeric, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from growthdesk.core.enum_utils import enum_comment
from growthdesk.database import Base
from growthdesk.db_types import JSONType, UTCDateTime, UUIDType, utc_now


# ==================== ENUMS (stored as VARCHAR) ====================

class AffiliateStatus(str, Enum):
    """Affiliate account status."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    REJECTED = "REJECTED"


class CommissionStatus(str, Enum):
    """Commission lifecycle. Each transition has exactly one valid predecessor."""
    PENDING = "PENDING"           # Created at order time, counted in pending balance
    APPROVED = "APPROVED"         # Approved by an admin, payable once the hold period ends
    PAID = "PAID"                 # Settled by a completed payout
    REJECTED = "REJECTED"         # Rejected while pending, balance reversed
    REFUNDED = "REFUNDED"         # Order refunded after approval, balance reversed


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PayoutMethod(str, Enum):
    PAYPAL = "PAYPAL"
    BANK_TRANSFER = "BANK_TRANSFER"
    STRIPE = "STRIPE"
    MANUAL = "MANUAL"


class LedgerEntryType(str, Enum):
    """Balance movement kinds and the fields they move."""
    EARNED = "EARNED"             # earnings +amount, pending +amount
    REVERSED = "REVERSED"         # earnings -amount, pending -amount
    PAID = "PAID"                 # pending -amount, paid +amount


# ==================== MODELS ====================

class CommissionPlan(Base):
    """Per-tenant rate table. Rates are percentages in [0, 100]."""
    __tablename__ = "commission_plans"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tier1_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    tier2_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    tier3_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)

    cookie_duration_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    commission_hold_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    minimum_payout: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    def rate_for_tier(self, tier: int) -> Optional[Decimal]:
        return {1: self.tier1_rate, 2: self.tier2_rate, 3: self.tier3_rate}.get(tier)

    def __repr__(self) -> str:
        return f"<CommissionPlan {self.name}>"


class Affiliate(Base):
    """
    Affiliate account.

    ``version`` is an optimistic lock: every ORM update of the row checks and
    bumps it, so two writers racing on the same affiliate cannot both win.
    """
    __tablename__ = "affiliates"
    __table_args__ = (
        UniqueConstraint("tenant_id", "affiliate_code", name="uq_affiliates_tenant_code"),
        Index("ix_affiliates_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    affiliate_code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Referral chain (not enforced acyclic, walks are capped and cycle-guarded)
    parent_affiliate_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    commission_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("commission_plans.id", ondelete="SET NULL"),
        nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(50),
        default=AffiliateStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(AffiliateStatus)
    )

    # Balances (moved only through the ledger)
    total_earnings: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    pending_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    # Tracking counters
    total_clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conversion_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)

    # Preferred payout method and account details
    payment_info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_payout_requested_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_payout_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Affiliate {self.affiliate_code}>"


class AffiliateClick(Base):
    """Tracked referral click. Drives last-click attribution."""
    __tablename__ = "affiliate_clicks"
    __table_args__ = (
        Index("ix_affiliate_clicks_visitor", "tenant_id", "visitor_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    visitor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    referrer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    landing_page: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    device_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    browser: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    os: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    utm_params: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    converted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    converted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)


class Commission(Base):
    """
    One tier's share of one order.

    Status changes go through the ``version`` optimistic lock, so an approve
    and a reject racing on the same PENDING row cannot both commit.
    """
    __tablename__ = "commissions"
    __table_args__ = (
        Index("ix_commissions_affiliate_status", "affiliate_id", "status"),
        Index("ix_commissions_payable", "status", "payable_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False
    )
    commission_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("commission_plans.id", ondelete="SET NULL"),
        nullable=True
    )

    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    product_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    tier: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    order_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[str] = mapped_column(
        String(50),
        default=CommissionStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(CommissionStatus)
    )

    payable_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Set when a payout claims the commission, cleared if that payout fails or is cancelled
    payout_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("payouts.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Payout claims are bulk UPDATEs and leave it alone
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Commission {self.id} tier={self.tier} {self.status}>"


class Payout(Base):
    """Payment of a fixed snapshot of commissions to one affiliate."""
    __tablename__ = "payouts"
    __table_args__ = (
        Index("ix_payouts_affiliate_status", "affiliate_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default=PayoutStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(PayoutStatus)
    )
    method: Mapped[str] = mapped_column(
        String(50),
        default=PayoutMethod.MANUAL.value,
        nullable=False,
        comment=enum_comment(PayoutMethod)
    )
    payment_details: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    commission_ids: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    commission_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Payout {self.id} {self.amount} {self.status}>"


class AffiliateLedgerEntry(Base):
    """
    Append-only record of one balance movement.

    Folding an affiliate's entries reproduces its three balance totals.
    A commission moves each way at most once.
    """
    __tablename__ = "affiliate_ledger_entries"
    __table_args__ = (
        UniqueConstraint("commission_id", "entry_type", name="uq_ledger_commission_entry_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    commission_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("commissions.id", ondelete="CASCADE"),
        nullable=False
    )
    payout_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    entry_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment=enum_comment(LedgerEntryType)
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    earnings_delta: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    pending_delta: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    paid_delta: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
