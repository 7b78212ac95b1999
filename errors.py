"""
Error taxonomy for the E2Recycle lifecycle engine.

Every failure surfaced to the API layer is one of these kinds. Each carries a
machine-readable ``code`` so callers can branch on type instead of message
text, and ``to_dict()`` renders the body the API returns verbatim.
"""
from typing import Any, Dict


class LifecycleError(Exception):
    code = "LIFECYCLE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class ValidationError(LifecycleError):
    """Malformed input the caller can correct."""
    code = "VALIDATION_ERROR"


class NotFoundError(LifecycleError):
    """Unknown id, or an id the caller does not own."""
    code = "NOT_FOUND"


class InvalidStateError(LifecycleError):
    """Transition not legal from the entity's current status."""
    code = "INVALID_STATE"


class ConcurrencyError(InvalidStateError):
    """The store reported a write conflict with a concurrent operation."""
    code = "CONCURRENT_MODIFICATION"


class ForbiddenError(LifecycleError):
    code = "FORBIDDEN"


class PaymentPendingError(LifecycleError):
    """Recycler still owes, or awaits confirmation of, commission payments."""
    code = "PAYMENT_PENDING"

    def __init__(self, pending_payments: int):
        super().__init__(
            f"You have {pending_payments} commission payment(s) pending or awaiting "
            "confirmation. Settle them before accepting new requests."
        )
        self.pending_payments = pending_payments

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["pendingPayments"] = self.pending_payments
        return body
