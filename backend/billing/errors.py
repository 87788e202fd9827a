# Overview: Typed domain errors shared by services and routes.

"""
Error taxonomy for the billing engine.

Every error carries:
- kind: stable machine-readable name returned to API clients
- http_status: status code the routes answer with
- state: authoritative state of the affected aggregate (to_dict()) when one
  exists, so a client can reconcile without re-fetching

Validation errors are raised before any write happens. Services roll the
session back before these propagate (see concurrency.run_with_retry).
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all domain errors."""

    kind = "BillingError"
    http_status = 400

    def __init__(self, message: str, *, state: dict | None = None):
        super().__init__(message)
        self.message = message
        self.state = state

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "state": self.state,
        }


class ValidationError(BillingError):
    """Malformed or out-of-range input."""

    kind = "ValidationError"
    http_status = 400


class NotFoundError(BillingError):
    kind = "NotFound"
    http_status = 404


class CrossTenantViolation(BillingError):
    """
    A reference crossed the tenant boundary.

    Fatal: never retried. Indicates a programming or security bug upstream.
    """

    kind = "CrossTenantViolation"
    http_status = 403


class InvalidStateTransition(BillingError):
    """The requested action is not valid for the aggregate's current state."""

    kind = "InvalidStateTransition"
    http_status = 409


class SubscriptionConflict(InvalidStateTransition):
    """A tenant already holds a non-terminal subscription."""

    kind = "SubscriptionConflict"


class DuplicatePaymentReference(BillingError):
    """
    The (invoice, reference) pair was already applied.

    Raised internally and turned into an idempotent replay by
    payment_service.record_payment; callers see the original payment.
    """

    kind = "DuplicatePaymentReference"
    http_status = 200

    def __init__(self, message: str, *, payment=None, state: dict | None = None):
        super().__init__(message, state=state)
        self.payment = payment


class OverpaymentRejected(BillingError):
    """Strict overpayment policy refused a payment exceeding the balance."""

    kind = "OverpaymentRejected"
    http_status = 422


class ConcurrencyConflict(BillingError):
    """Optimistic lock still failing after all retries."""

    kind = "ConcurrencyConflict"
    http_status = 409


class PersistenceUnavailable(BillingError):
    """Transient database failure (locks, deadlocks, lost connection)."""

    kind = "PersistenceUnavailable"
    http_status = 503


class DuplicateEntityError(BillingError):
    """A per-tenant uniqueness rule was violated."""

    kind = "DuplicateEntity"
    http_status = 409


class DuplicateInvoiceNumber(DuplicateEntityError):
    kind = "DuplicateInvoiceNumber"


class SyncConflict(BillingError):
    """A local change was superseded by a newer authoritative version."""

    kind = "SyncConflict"
    http_status = 409
