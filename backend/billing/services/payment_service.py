# Overview: Service-layer operations for invoice payments; encapsulates business logic and database work.

"""
Payment Processing Service

WHY: Settle invoices with synchronous tenders (cash, cards, cheques) and
asynchronous ones (online gateways, bank transfers) that a webhook confirms
later, and reverse completed payments without deleting history.

PAYMENT STATES:
    PENDING --confirm--> COMPLETED --void--> REFUNDED
    PENDING --confirm--> FAILED

DESIGN PRINCIPLES:
- Only COMPLETED payments count toward invoice.amount_paid
- (invoice_id, reference) is an idempotency key: a replay returns the
  original payment and changes nothing
- Immutable ledger: every payment event is logged to payment_transactions
- Invoice row is locked for every mutation (per-invoice serialization)
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    DuplicatePaymentReference,
    InvalidStateTransition,
    NotFoundError,
    OverpaymentRejected,
    ValidationError,
)
from ..models import Invoice, Payment, PaymentTransaction
from ..models.invoices import (
    INVOICE_CANCELLED,
    INVOICE_DRAFT,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_METHODS,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
)
from billing.money import Money, MoneyOverflowError
from billing.time_utils import utcnow
from .audit_service import commit_with_audit, stage_audit
from .concurrency import lock_for_update, run_with_retry
from .invoice_service import refresh_payment_state, send_locked
from .sync_service import mark_pending
from .tenant_service import ActorContext, require_tenant_entity


logger = logging.getLogger(__name__)


# =============================================================================
# TRANSACTION TYPES (CONSTANTS)
# =============================================================================

TXN_PAYMENT = "PAYMENT"
TXN_PENDING = "PENDING"
TXN_CONFIRM = "CONFIRM"
TXN_FAIL = "FAIL"
TXN_REFUND = "REFUND"

OVERPAYMENT_ALLOW = "allow"
OVERPAYMENT_REJECT = "reject"

CONFIRM_OUTCOMES = (PAYMENT_COMPLETED, PAYMENT_FAILED)


def _is_async_method(method: str) -> bool:
    return method in current_app.config.get("BILLING_ASYNC_PAYMENT_METHODS", ())


def _overpayment_policy() -> str:
    policy = str(current_app.config.get("BILLING_OVERPAYMENT_POLICY", OVERPAYMENT_ALLOW)).lower()
    if policy not in (OVERPAYMENT_ALLOW, OVERPAYMENT_REJECT):
        raise ValueError(f"Invalid BILLING_OVERPAYMENT_POLICY: {policy}")
    return policy


def _normalize_method(method: str) -> str:
    normalized = (method or "").strip().upper()
    if normalized not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {method}. Must be one of {list(PAYMENT_METHODS)}")
    return normalized


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def record_payment(
    ctx: ActorContext,
    invoice_id: int,
    amount,
    method: str,
    reference: str | None = None,
    *,
    paid_date=None,
) -> Payment:
    """
    Record a payment against an invoice.

    WHY: Core settlement operation. A payment on a DRAFT invoice issues it
    first (payment implies the invoice was sent).

    Args:
        ctx: Caller context
        invoice_id: Invoice being paid
        amount: Positive amount in the invoice currency (str / int / Decimal)
        method: One of PAYMENT_METHODS
        reference: Gateway transaction id, cheque number, etc. (idempotency key)
        paid_date: When the money was received (defaults to now for completed payments)

    Returns:
        The new Payment, or the original one when `reference` was already applied

    Raises:
        ValidationError: bad amount or method
        InvalidStateTransition: invoice cancelled
        OverpaymentRejected: strict policy and the amount exceeds the open balance
    """
    method = _normalize_method(method)
    reference = reference.strip() if reference else None

    def _op():
        invoice = require_tenant_entity(Invoice, invoice_id, ctx, lock=True)

        if invoice.status == INVOICE_CANCELLED:
            raise InvalidStateTransition("Cannot pay a cancelled invoice", state=invoice.to_dict())

        try:
            payment_amount = Money.of(amount, invoice.currency)
            # amount_paid must still fit its column once this payment lands
            invoice.money("amount_paid").add(payment_amount).round()
        except (TypeError, ValueError, MoneyOverflowError) as exc:
            raise ValidationError(f"amount: {exc}", state=invoice.to_dict())
        if not payment_amount.is_positive():
            raise ValidationError("Payment amount must be positive", state=invoice.to_dict())

        if reference:
            existing = (
                db.session.query(Payment)
                .filter_by(invoice_id=invoice.id, reference=reference)
                .first()
            )
            if existing is not None:
                raise DuplicatePaymentReference(
                    f"Reference '{reference}' already applied to invoice {invoice.id}",
                    payment=existing,
                    state=invoice.to_dict(),
                )

        if invoice.status == INVOICE_DRAFT:
            send_locked(invoice)

        if _overpayment_policy() == OVERPAYMENT_REJECT:
            pending = Money.sum(
                (Money.of(p.amount, invoice.currency) for p in invoice.payments if p.status == PAYMENT_PENDING),
                invoice.currency,
            )
            committed = invoice.money("amount_paid") + pending + payment_amount
            if committed > invoice.money("total"):
                raise OverpaymentRejected(
                    f"Payment of {payment_amount} exceeds the open balance of "
                    f"{invoice.money('total') - invoice.money('amount_paid') - pending}",
                    state=invoice.to_dict(),
                )

        now = utcnow()
        is_async = _is_async_method(method)
        payment = Payment(
            tenant_id=invoice.tenant_id,
            invoice=invoice,
            amount=payment_amount.amount,
            method=method,
            status=PAYMENT_PENDING if is_async else PAYMENT_COMPLETED,
            reference=reference,
            date=now,
            paid_date=None if is_async else (paid_date or now),
            created_by_user_id=ctx.user_id,
        )
        mark_pending(payment)
        db.session.add(payment)
        db.session.flush()

        _log_payment_transaction(
            payment,
            TXN_PENDING if is_async else TXN_PAYMENT,
            Money.zero(invoice.currency) if is_async else payment_amount,
            user_id=ctx.user_id,
        )

        refresh_payment_state(invoice)
        mark_pending(invoice)

        entry = stage_audit(ctx, "payment.recorded", entity=payment, meta={
            "invoice_id": invoice.id,
            "amount": payment_amount.amount,
            "method": method,
            "status": payment.status,
            "reference": reference,
            "invoice_status": invoice.status,
        })
        commit_with_audit([entry])
        return payment

    try:
        # IntegrityError: a concurrent writer inserted the same reference
        return run_with_retry(_op, retry_on=(IntegrityError,))
    except DuplicatePaymentReference as dup:
        logger.info("Duplicate payment reference %r on invoice %s; returning payment %s",
                    reference, invoice_id, dup.payment.id)
        return dup.payment


# =============================================================================
# GATEWAY CONFIRMATION
# =============================================================================

def confirm_payment(payment_id: int, outcome: str, ctx: ActorContext | None = None,
                    *, reason: str | None = None) -> Payment:
    """
    Webhook entry point: settle a PENDING payment.

    Repeating the outcome already recorded is a no-op (gateways redeliver).

    Raises:
        ValidationError: outcome not COMPLETED / FAILED
        InvalidStateTransition: payment is not PENDING and differs from outcome
    """
    outcome = (outcome or "").strip().upper()
    if outcome not in CONFIRM_OUTCOMES:
        raise ValidationError(f"Invalid outcome: {outcome}. Must be one of {list(CONFIRM_OUTCOMES)}")

    if ctx is None:
        found = db.session.query(Payment).filter_by(id=payment_id).first()
        if found is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        ctx = ActorContext.system(found.tenant_id)

    def _op():
        payment = require_tenant_entity(Payment, payment_id, ctx)
        invoice = require_tenant_entity(Invoice, payment.invoice_id, ctx, lock=True)
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()

        if payment.status == outcome:
            db.session.rollback()
            logger.info("Payment %s already %s; confirmation ignored", payment_id, outcome)
            return payment
        if payment.status != PAYMENT_PENDING:
            raise InvalidStateTransition(
                f"Cannot move payment from {payment.status} to {outcome}",
                state=payment.to_dict(),
            )

        amount = Money.of(payment.amount, invoice.currency)
        if outcome == PAYMENT_COMPLETED:
            payment.status = PAYMENT_COMPLETED
            payment.paid_date = utcnow()
            _log_payment_transaction(payment, TXN_CONFIRM, amount, user_id=ctx.user_id, reason=reason)
        else:
            payment.status = PAYMENT_FAILED
            payment.failure_reason = reason
            _log_payment_transaction(payment, TXN_FAIL, Money.zero(invoice.currency),
                                     user_id=ctx.user_id, reason=reason)

        mark_pending(payment)
        refresh_payment_state(invoice)
        mark_pending(invoice)

        commit_with_audit([stage_audit(ctx, "payment.confirmed", entity=payment, meta={
            "invoice_id": invoice.id,
            "outcome": outcome,
            "reason": reason,
            "invoice_status": invoice.status,
        })])
        return payment

    return run_with_retry(_op)


# =============================================================================
# PAYMENT VOIDS
# =============================================================================

def void_payment(ctx: ActorContext, payment_id: int, reason: str | None = None) -> Payment:
    """
    Refund / charge back a COMPLETED payment.

    WHY: Corrections must leave the audit trail intact; the payment row stays
    as REFUNDED and the ledger gets a negative REFUND entry.

    Raises:
        InvalidStateTransition: payment is not COMPLETED
    """
    def _op():
        payment = require_tenant_entity(Payment, payment_id, ctx)
        invoice = require_tenant_entity(Invoice, payment.invoice_id, ctx, lock=True)
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()

        if payment.status != PAYMENT_COMPLETED:
            raise InvalidStateTransition(
                f"Only COMPLETED payments can be voided (payment is {payment.status})",
                state=payment.to_dict(),
            )
        if invoice.status == INVOICE_CANCELLED:
            raise InvalidStateTransition("Invoice is cancelled", state=invoice.to_dict())

        payment.status = PAYMENT_REFUNDED
        payment.refunded_by_user_id = ctx.user_id
        payment.refunded_at = utcnow()
        payment.refund_reason = reason

        _log_payment_transaction(
            payment, TXN_REFUND, -Money.of(payment.amount, invoice.currency),
            user_id=ctx.user_id, reason=reason,
        )

        mark_pending(payment)
        refresh_payment_state(invoice)
        mark_pending(invoice)

        commit_with_audit([stage_audit(ctx, "payment.voided", entity=payment, meta={
            "invoice_id": invoice.id,
            "amount": Money.of(payment.amount, invoice.currency).amount,
            "reason": reason,
            "invoice_status": invoice.status,
        })])
        return payment

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_payment(ctx: ActorContext, payment_id: int) -> Payment:
    return require_tenant_entity(Payment, payment_id, ctx)


def get_invoice_payments(ctx: ActorContext, invoice_id: int, include_refunded: bool = True) -> list[Payment]:
    """
    Get all payments for an invoice, oldest first.

    Args:
        include_refunded: Include REFUNDED and FAILED payments (default: True)
    """
    invoice = require_tenant_entity(Invoice, invoice_id, ctx)
    query = db.session.query(Payment).filter_by(invoice_id=invoice.id)
    if not include_refunded:
        query = query.filter(Payment.status.in_((PAYMENT_PENDING, PAYMENT_COMPLETED)))
    return query.order_by(Payment.id).all()


def get_payment_transactions(ctx: ActorContext, invoice_id: int) -> list[PaymentTransaction]:
    invoice = require_tenant_entity(Invoice, invoice_id, ctx)
    return (
        db.session.query(PaymentTransaction)
        .filter_by(invoice_id=invoice.id)
        .order_by(PaymentTransaction.id)
        .all()
    )


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _log_payment_transaction(
    payment: Payment,
    transaction_type: str,
    amount: Money,
    user_id: int | None = None,
    reason: str | None = None,
) -> PaymentTransaction:
    """
    Log a payment event to the immutable ledger.

    WHY: The signed sum of these rows per invoice must always equal
    invoice.amount_paid; verify_invoice_invariants checks it.
    """
    transaction = PaymentTransaction(
        tenant_id=payment.tenant_id,
        payment_id=payment.id,
        invoice_id=payment.invoice_id,
        transaction_type=transaction_type,
        amount=amount.amount,
        method=payment.method,
        user_id=user_id,
        reason=reason,
        occurred_at=utcnow(),
    )
    db.session.add(transaction)
    db.session.flush()
    return transaction
