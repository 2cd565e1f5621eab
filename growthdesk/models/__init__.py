"""
SQLAlchemy models. Importing this package registers every table on Base.metadata.
"""
from growthdesk.models.tenant import Tenant
from growthdesk.models.affiliate import (
    AffiliateStatus,
    CommissionStatus,
    PayoutStatus,
    PayoutMethod,
    LedgerEntryType,
    CommissionPlan,
    Affiliate,
    AffiliateClick,
    Commission,
    Payout,
    AffiliateLedgerEntry,
)
from growthdesk.models.contact import Contact, ContactStatus
from growthdesk.models.email_sequence import (
    SequenceStatus,
    SequenceTrigger,
    DelayType,
    SubscriberStatus,
    EmailType,
    EmailLogStatus,
    EmailSequence,
    EmailSequenceStep,
    EmailSequenceSubscriber,
    EmailLog,
)

__all__ = [
    "Tenant",
    "AffiliateStatus",
    "CommissionStatus",
    "PayoutStatus",
    "PayoutMethod",
    "LedgerEntryType",
    "CommissionPlan",
    "Affiliate",
    "AffiliateClick",
    "Commission",
    "Payout",
    "AffiliateLedgerEntry",
    "Contact",
    "ContactStatus",
    "SequenceStatus",
    "SequenceTrigger",
    "DelayType",
    "SubscriberStatus",
    "EmailType",
    "EmailLogStatus",
    "EmailSequence",
    "EmailSequenceStep",
    "EmailSequenceSubscriber",
    "EmailLog",
]
