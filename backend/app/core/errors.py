"""Error taxonomy shared by every billing layer.

Each error carries an ``ErrorKind`` so callers branch on the kind instead of
matching message strings. The HTTP boundary maps kinds to status codes in one
place (``app.main``).
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Categories of billing failures."""
    BUSINESS_RULE = "business_rule"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INFRASTRUCTURE = "infrastructure"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"


class BillingError(Exception):
    """Base error for the billing core."""

    kind: ErrorKind = ErrorKind.INFRASTRUCTURE
    retryable: bool = False
    default_message: str = "Billing operation failed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "message": self.message,
            "error_kind": self.kind.value,
        }


# ==================== Business rules ====================

class DomainError(BillingError):
    """Business-rule violation reported back to the caller."""
    kind = ErrorKind.BUSINESS_RULE
    default_message = "Operation not allowed"


class InvalidPlanTransition(DomainError):
    default_message = "Cannot change to the plan already in use"


class SubscriptionNotActive(DomainError):
    default_message = "Subscription is not active"


class PlanChangePending(DomainError):
    default_message = "A plan change is still awaiting payment"


class PlanChangeLimitExceeded(DomainError):
    default_message = "Plan change limit reached for this billing cycle"


class InvalidAmount(DomainError):
    default_message = "Amount is outside the allowed range"


class InvalidWebhookPayload(DomainError):
    default_message = "Webhook payload is malformed"


class InvalidInvoiceTransition(DomainError):
    """Raised when an invoice would leave a terminal status."""
    default_message = "Invoice status cannot change once settled"


class InvalidSubscriptionUpdate(DomainError):
    default_message = "Subscription billing cycle cannot move backward"


class AmountMismatch(DomainError):
    default_message = "Paid amount does not cover the invoice"


# ==================== Not found ====================

class NotFoundError(BillingError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"


class PlanNotFound(NotFoundError):
    default_message = "Plan not found"


class SubscriptionNotFound(NotFoundError):
    default_message = "Subscription not found"


class InvoiceNotFound(NotFoundError):
    default_message = "Invoice not found"


class GatewayNotFound(NotFoundError):
    default_message = "Payment gateway not supported"


# ==================== Access ====================

class AuthenticationRequired(BillingError):
    kind = ErrorKind.UNAUTHORIZED
    default_message = "Missing tenant credentials"


class CapabilityDenied(BillingError):
    kind = ErrorKind.FORBIDDEN
    default_message = "Capability required"


# ==================== Conflict / infrastructure ====================

class ConcurrencyConflict(BillingError):
    """Another request changed the same row first; safe to retry."""
    kind = ErrorKind.CONFLICT
    retryable = True
    default_message = "Concurrent update detected, please try again"


class GatewayError(BillingError):
    kind = ErrorKind.INFRASTRUCTURE
    retryable = True
    default_message = "Payment gateway unavailable, please try again"


class GatewayTimeout(GatewayError):
    default_message = "Payment gateway timed out, please try again"


class PersistenceError(BillingError):
    kind = ErrorKind.INFRASTRUCTURE
    retryable = True
    default_message = "Storage unavailable, please try again"


class WebhookNotRecorded(PersistenceError):
    """The notification could not be stored; the gateway must redeliver it."""
    default_message = "Webhook could not be recorded, please try again"
