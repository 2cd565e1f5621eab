# Services module
from growthdesk.services.affiliate_ledger_service import AffiliateLedgerService
from growthdesk.services.affiliate_tracking_service import AffiliateTrackingService
from growthdesk.services.commission_service import CommissionService
from growthdesk.services.payout_service import PayoutService

# Email sequence engine
from growthdesk.services.email_sequence_service import EmailSequenceService
from growthdesk.services.email_service import SmtpEmailBackend, get_email_backend

__all__ = [
    "AffiliateLedgerService",
    "AffiliateTrackingService",
    "CommissionService",
    "PayoutService",
    # Email
    "EmailSequenceService",
    "SmtpEmailBackend",
    "get_email_backend",
]
