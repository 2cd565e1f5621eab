"""
Error taxonomy for the affiliate and sequence engines.

Every error carries the HTTP status the API layer maps it to, so routers
can let these propagate to the global exception handler in main.py.
"""
from typing import Optional


class GrowthdeskError(Exception):
    """Base class for all engine errors."""
    status_code: int = 400
    code: str = "GROWTHDESK_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(GrowthdeskError):
    """Referenced entity does not exist for the tenant."""
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id):
        super().__init__(
            f"{entity} {entity_id} not found",
            {"entity": entity, "id": str(entity_id)},
        )
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateTransitionError(GrowthdeskError):
    """Status change attempted from a state other than its required predecessor."""
    status_code = 409
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move {entity} from {current} to {target}",
            {"entity": entity, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class PayoutConsistencyError(InvalidStateTransitionError):
    """A payout references commissions that can no longer be paid by it."""
    code = "PAYOUT_INCONSISTENT"

    def __init__(self, payout_id, commission_ids: list):
        super().__init__(
            "Payout",
            "PENDING",
            "COMPLETED",
            message=(
                f"Payout {payout_id} references {len(commission_ids)} commission(s) "
                f"that are no longer payable by it"
            ),
        )
        self.details["commission_ids"] = [str(c) for c in commission_ids]
        self.commission_ids = commission_ids


class InsufficientBalanceError(GrowthdeskError):
    status_code = 422
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, balance, minimum):
        super().__init__(
            f"Pending balance {balance} is below the minimum payout of {minimum}",
            {"balance": str(balance), "minimum": str(minimum)},
        )
        self.balance = balance
        self.minimum = minimum


class NoPayableCommissionsError(GrowthdeskError):
    status_code = 422
    code = "NO_PAYABLE_COMMISSIONS"

    def __init__(self, affiliate_id):
        super().__init__(
            f"Affiliate {affiliate_id} has no payable commissions",
            {"affiliate_id": str(affiliate_id)},
        )


class AttributionExpiredError(GrowthdeskError):
    """Click found but its cookie window has lapsed. Resolved to "no attribution"."""
    code = "ATTRIBUTION_EXPIRED"


class ConcurrentModificationError(GrowthdeskError):
    status_code = 409
    code = "CONCURRENT_MODIFICATION"


class AlreadyEnrolledError(GrowthdeskError):
    status_code = 409
    code = "ALREADY_ENROLLED"

    def __init__(self, sequence_id, contact_id):
        super().__init__(
            f"Contact {contact_id} is already enrolled in sequence {sequence_id}",
            {"sequence_id": str(sequence_id), "contact_id": str(contact_id)},
        )


class SequenceNotActiveError(GrowthdeskError):
    status_code = 409
    code = "SEQUENCE_NOT_ACTIVE"

    def __init__(self, sequence_id, status: str):
        super().__init__(
            f"Sequence {sequence_id} is {status}, not ACTIVE",
            {"sequence_id": str(sequence_id), "status": status},
        )


class EmailDeliveryError(GrowthdeskError):
    status_code = 502
    code = "EMAIL_DELIVERY_FAILED"
