"""Schemas for the affiliate tracking, commission and payout services."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from pydantic import Field, field_validator

from growthdesk.core.enum_utils import to_enum
from growthdesk.models.affiliate import PayoutMethod
from growthdesk.schemas.base import BaseCreateSchema, BaseResponseSchema


# ==================== Tracking ====================

class ClickCreate(BaseCreateSchema):
    affiliate_code: str = Field(..., min_length=1, max_length=50)
    visitor_id: Optional[str] = Field(None, max_length=100)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    landing_page: Optional[str] = None
    utm_params: dict = Field(default_factory=dict)


class ClickTrackResult(BaseResponseSchema):
    click_id: uuid.UUID
    affiliate_id: uuid.UUID
    visitor_id: str
    expires_at: datetime


class AttributionResult(BaseResponseSchema):
    """The affiliate credited for an order. Always tier 1 at attribution time."""
    affiliate_id: uuid.UUID
    click_id: uuid.UUID
    tier: int = 1


class AffiliateChainLink(BaseResponseSchema):
    affiliate_id: uuid.UUID
    tier: int


class ClickStats(BaseResponseSchema):
    total_clicks: int
    conversions: int
    conversion_rate: Decimal
    unique_visitors: int


# ==================== Commissions ====================

class CommissionStats(BaseResponseSchema):
    total_count: int = 0
    total_amount: Decimal = Decimal("0.00")
    pending_amount: Decimal = Decimal("0.00")
    approved_amount: Decimal = Decimal("0.00")
    paid_amount: Decimal = Decimal("0.00")
    rejected_amount: Decimal = Decimal("0.00")
    refunded_amount: Decimal = Decimal("0.00")


# ==================== Payouts ====================

class PayoutRequest(BaseCreateSchema):
    """Payout request. ``method`` falls back to the affiliate's saved method, then MANUAL."""
    method: Optional[PayoutMethod] = None
    payment_details: Optional[dict] = None
    notes: Optional[str] = None

    @field_validator('method', mode='before')
    @classmethod
    def normalize_method(cls, v):
        return to_enum(v, PayoutMethod) or v


class BatchPayoutRequest(BaseCreateSchema):
    affiliate_ids: List[uuid.UUID]
    method: PayoutMethod = PayoutMethod.MANUAL
    minimum_balance: Decimal = Field(Decimal("0"), ge=0)
    notes: Optional[str] = None

    @field_validator('method', mode='before')
    @classmethod
    def normalize_method(cls, v):
        return to_enum(v, PayoutMethod) or v


class BatchItemStatus(str, Enum):
    CREATED = "CREATED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class BatchPayoutOutcome(BaseResponseSchema):
    affiliate_id: uuid.UUID
    status: BatchItemStatus
    payout_id: Optional[uuid.UUID] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class BatchPayoutResult(BaseResponseSchema):
    payout_ids: List[uuid.UUID] = Field(default_factory=list)
    outcomes: List[BatchPayoutOutcome] = Field(default_factory=list)

    @property
    def created(self) -> int:
        return len(self.payout_ids)


class PayoutStats(BaseResponseSchema):
    total_count: int = 0
    total_amount: Decimal = Decimal("0.00")
    pending_amount: Decimal = Decimal("0.00")
    completed_amount: Decimal = Decimal("0.00")
    failed_amount: Decimal = Decimal("0.00")
    cancelled_amount: Decimal = Decimal("0.00")


# ==================== Ledger ====================

class ReconciliationReport(BaseResponseSchema):
    affiliate_id: uuid.UUID
    ledger_earnings: Decimal
    ledger_pending: Decimal
    ledger_paid: Decimal
    recorded_earnings: Decimal
    recorded_pending: Decimal
    recorded_paid: Decimal
    fixed: bool = False

    @property
    def is_consistent(self) -> bool:
        return (
            self.ledger_earnings == self.recorded_earnings
            and self.ledger_pending == self.recorded_pending
            and self.ledger_paid == self.recorded_paid
        )
