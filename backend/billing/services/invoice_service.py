# Overview: Service-layer operations for invoices; the ledger state machine and its totals.

"""
Invoice Ledger

WHY: The invoice is the accounting aggregate. Every figure on it is derived
from its lines and payments, and every mutation goes through this module so
the invariants below hold after each commit.

INVARIANTS:
- total == round(subtotal + tax), all in the invoice currency
- balance_due == total - amount_paid; negative only with overpaid=True
- amount_paid == sum(COMPLETED payments)
- status is derived (derive_invoice_status), never written directly

LIFECYCLE:
    DRAFT --send--> SENT --payments--> PARTIALLY_PAID --> PAID
    DRAFT | SENT (amount_paid == 0, nothing PENDING) --cancel--> CANCELLED

Lines are price snapshots. They can be added or removed while DRAFT only;
each line takes stock from its Item and cancellation gives it back.

CONCURRENCY:
Every mutation locks the invoice row and relies on Invoice.version_id; a lost
race surfaces as StaleDataError and the whole operation is retried by
run_with_retry.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import DuplicateInvoiceNumber, InvalidStateTransition, ValidationError
from ..models import Customer, Invoice, InvoiceItem, Item, Payment, PaymentTransaction
from ..models.invoices import (
    INVOICE_CANCELLED,
    INVOICE_DRAFT,
    INVOICE_PAID,
    INVOICE_PARTIALLY_PAID,
    INVOICE_SENT,
    PAYMENT_COMPLETED,
    PAYMENT_PENDING,
)
from billing.money import Money, MoneyOverflowError, round_quantity, round_rate
from billing.time_utils import parse_iso_datetime, utcnow
from .audit_service import commit_with_audit, stage_audit
from .catalog_service import tenant_currency
from .concurrency import lock_for_update, run_with_retry
from .document_service import DOCUMENT_INVOICE, next_document_number
from .sync_service import mark_pending
from .tax_service import calculate_tax
from .tenant_service import (
    ActorContext,
    assert_same_tenant,
    require_active_tenant,
    require_tenant_entity,
    scoped_query,
)


logger = logging.getLogger(__name__)

VALID_INVOICE_STATUSES = (
    INVOICE_DRAFT,
    INVOICE_SENT,
    INVOICE_PARTIALLY_PAID,
    INVOICE_PAID,
    INVOICE_CANCELLED,
)


# =============================================================================
# DERIVED STATE
# =============================================================================

def derive_invoice_status(invoice: Invoice) -> str:
    """
    Status from the facts on the invoice.

    A sent invoice with a zero total stays SENT: nothing was paid.
    """
    if invoice.cancelled_at is not None:
        return INVOICE_CANCELLED
    if invoice.sent_at is None:
        return INVOICE_DRAFT

    paid = invoice.money("amount_paid")
    if not paid.is_positive():
        return INVOICE_SENT
    if paid < invoice.money("total"):
        return INVOICE_PARTIALLY_PAID
    return INVOICE_PAID


def _lines(invoice: Invoice) -> list[InvoiceItem]:
    return db.session.query(InvoiceItem).filter_by(invoice_id=invoice.id).order_by(InvoiceItem.id).all()


def _payments(invoice: Invoice, status: str | None = None) -> list[Payment]:
    query = db.session.query(Payment).filter_by(invoice_id=invoice.id)
    if status:
        query = query.filter(Payment.status == status)
    return query.order_by(Payment.id).all()


def _out_of_range(exc: MoneyOverflowError, invoice: Invoice | None = None) -> ValidationError:
    return ValidationError(
        f"Amount out of range: {exc}",
        state=invoice.to_dict() if invoice is not None else None,
    )


def refresh_payment_state(invoice: Invoice) -> None:
    """Recompute amount_paid, balance_due, overpaid and status from payments."""
    if invoice.cancelled_at is not None:
        return

    try:
        paid = Money.sum(
            (Money.of(p.amount, invoice.currency) for p in _payments(invoice, PAYMENT_COMPLETED)),
            invoice.currency,
        ).round()
        balance = (invoice.money("total") - paid).round()
    except MoneyOverflowError as exc:
        raise _out_of_range(exc, invoice)

    invoice.amount_paid = paid.amount
    invoice.balance_due = balance.amount
    invoice.overpaid = balance.is_negative()
    invoice.status = derive_invoice_status(invoice)


def _recalculate_totals(invoice: Invoice, tenant) -> None:
    """Recompute subtotal, tax and total from the lines; nothing is assigned on overflow."""
    db.session.flush()
    subtotal = Money.sum(
        (Money.of(line.line_total, invoice.currency) for line in _lines(invoice)),
        invoice.currency,
    ).round()
    tax = calculate_tax(tenant, subtotal, invoice.tax_jurisdiction)
    total = (subtotal + tax).round()

    invoice.subtotal = subtotal.amount
    invoice.tax = tax.amount
    invoice.total = total.amount
    refresh_payment_state(invoice)


def verify_invoice_invariants(invoice: Invoice) -> list[str]:
    """
    Check one invoice against the ledger invariants.

    Returns a list of human-readable violations (empty when consistent).
    """
    problems = []
    currency = invoice.currency
    subtotal = invoice.money("subtotal")
    tax = invoice.money("tax")
    total = invoice.money("total")
    paid = invoice.money("amount_paid")
    balance = invoice.money("balance_due")

    lines = _lines(invoice)
    line_sum = Money.sum((Money.of(line.line_total, currency) for line in lines), currency)
    if line_sum != subtotal:
        problems.append(f"subtotal {subtotal} != sum of line totals {line_sum}")
    for line in lines:
        expected = Money(line.unit_price, currency).multiply(line.quantity).round()
        if expected != Money.of(line.line_total, currency):
            problems.append(f"line {line.id}: line_total {line.line_total} != {expected.amount}")
        if line.tenant_id != invoice.tenant_id:
            problems.append(f"line {line.id} belongs to tenant {line.tenant_id}")

    if (subtotal + tax).round() != total:
        problems.append(f"total {total} != subtotal {subtotal} + tax {tax}")
    if total - paid != balance:
        problems.append(f"balance_due {balance} != total {total} - amount_paid {paid}")
    if balance.is_negative() and not invoice.overpaid:
        problems.append("negative balance_due without overpaid marker")

    if invoice.cancelled_at is None:
        completed = Money.sum(
            (Money.of(p.amount, currency) for p in _payments(invoice, PAYMENT_COMPLETED)), currency
        )
        if completed != paid:
            problems.append(f"amount_paid {paid} != completed payments {completed}")

    ledger_total = (
        db.session.query(func.coalesce(func.sum(PaymentTransaction.amount), 0))
        .filter(PaymentTransaction.invoice_id == invoice.id)
        .scalar()
    )
    ledger = Money.of(ledger_total, currency)
    if ledger != paid:
        problems.append(f"amount_paid {paid} != payment ledger sum {ledger}")

    expected_status = derive_invoice_status(invoice)
    if invoice.status != expected_status:
        problems.append(f"status {invoice.status} != derived {expected_status}")

    return problems


# =============================================================================
# LINES AND STOCK
# =============================================================================

def _take_stock(ctx: ActorContext, item: Item, quantity) -> None:
    remaining = round_quantity(item.quantity) - quantity
    if remaining < 0 and not ctx.is_admin:
        raise InvalidStateTransition(
            f"Insufficient stock for item {item.id}: {item.quantity} available, {quantity} requested",
            state=item.to_dict(),
        )
    item.quantity = remaining
    mark_pending(item)


def _return_stock(item: Item, quantity) -> None:
    item.quantity = round_quantity(item.quantity) + round_quantity(quantity)
    mark_pending(item)


def _snapshot_price(invoice: Invoice, item: Item, base_currency: str, override) -> Money:
    """Unit price for a new line, in the invoice currency."""
    if override is not None:
        try:
            price = Money.of(override, invoice.currency)
        except (TypeError, ValueError, MoneyOverflowError) as exc:
            raise ValidationError(f"unit_price: {exc}")
        if price.is_negative():
            raise ValidationError("unit_price cannot be negative")
        return price

    catalog_price = Money(item.unit_price, base_currency)
    if invoice.currency == base_currency:
        return catalog_price.round()
    return catalog_price.convert(invoice.currency_rate, invoice.currency)


def _add_line(ctx: ActorContext, invoice: Invoice, base_currency: str, line_data: dict) -> InvoiceItem:
    if not isinstance(line_data, dict) or "item_id" not in line_data:
        raise ValidationError("Each line needs an item_id")

    try:
        quantity = round_quantity(line_data.get("quantity", 1))
    except (TypeError, ValueError, MoneyOverflowError) as exc:
        raise ValidationError(f"quantity: {exc}")
    if quantity <= 0:
        raise ValidationError("quantity must be positive")

    item = require_tenant_entity(Item, line_data["item_id"], ctx, lock=True)
    assert_same_tenant(invoice, item)

    unit_price = _snapshot_price(invoice, item, base_currency, line_data.get("unit_price"))
    line_total = unit_price.multiply(quantity).round()

    _take_stock(ctx, item, quantity)

    line = InvoiceItem(
        tenant_id=invoice.tenant_id,
        invoice=invoice,
        item_id=item.id,
        description=line_data.get("description") or item.name,
        quantity=quantity,
        unit_price=unit_price.amount,
        line_total=line_total.amount,
    )
    mark_pending(line)
    db.session.add(line)
    return line


def _require_draft(invoice: Invoice, action: str) -> None:
    if invoice.status != INVOICE_DRAFT:
        raise InvalidStateTransition(
            f"Cannot {action}: invoice is {invoice.status}", state=invoice.to_dict()
        )


# =============================================================================
# CREATION
# =============================================================================

def coerce_datetime(value, field: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def _invoice_prefix(tenant) -> str:
    return tenant.setting("invoice_prefix") or current_app.config.get("BILLING_INVOICE_PREFIX", "INV")


def _number_taken(tenant_id: int, number: str) -> bool:
    return (
        db.session.query(Invoice.id).filter_by(tenant_id=tenant_id, invoice_number=number).first()
        is not None
    )


def _allocate_number(tenant, prefix: str) -> str:
    # Skip numbers already claimed by hand-entered invoices
    while True:
        number = next_document_number(
            tenant_id=tenant.id, document_type=DOCUMENT_INVOICE, prefix=prefix
        )
        if not _number_taken(tenant.id, number):
            return number


def create_invoice(
    ctx: ActorContext,
    customer_id: int,
    items: list[dict],
    *,
    invoice_number: str | None = None,
    currency: str | None = None,
    currency_rate=None,
    jurisdiction: str | None = None,
    due_date=None,
    note: str | None = None,
) -> Invoice:
    """
    Create a DRAFT invoice from catalog items.

    Args:
        ctx: Caller context (tenant scope)
        customer_id: Billable customer in the same tenant
        items: [{"item_id", "quantity", "unit_price"?, "description"?}]
            unit_price overrides the catalog price and is in the invoice currency
        invoice_number: Explicit number; generated from the tenant sequence when omitted
        currency / currency_rate: Invoice currency and the rate from the tenant's
            base currency (required when they differ)

    Returns:
        Invoice with totals computed, amount_paid 0 and balance_due == total

    Raises:
        ValidationError, CrossTenantViolation, DuplicateInvoiceNumber
    """
    if items is None:
        items = []
    if not isinstance(items, (list, tuple)):
        raise ValidationError("items must be a list")

    explicit_number = invoice_number.strip() if invoice_number else None
    due = coerce_datetime(due_date, "due_date")

    def _op():
        tenant = require_active_tenant(ctx)
        customer = require_tenant_entity(Customer, customer_id, ctx)

        base_currency = tenant_currency(tenant)
        invoice_currency = (currency or base_currency).strip().upper()
        rate = None
        if invoice_currency != base_currency:
            if currency_rate is None:
                raise ValidationError(
                    f"currency_rate is required to invoice in {invoice_currency} "
                    f"(catalog currency {base_currency})"
                )
            try:
                rate = round_rate(currency_rate)
            except (TypeError, ValueError, MoneyOverflowError) as exc:
                raise ValidationError(f"currency_rate: {exc}")
            if rate <= 0:
                raise ValidationError("currency_rate must be positive")

        prefix = _invoice_prefix(tenant)
        if explicit_number:
            if _number_taken(tenant.id, explicit_number):
                raise DuplicateInvoiceNumber(f"Invoice number '{explicit_number}' already exists")
            number = explicit_number
        else:
            number = _allocate_number(tenant, prefix)

        now = utcnow()
        invoice = Invoice(
            tenant_id=tenant.id,
            customer_id=customer.id,
            invoice_number=number,
            invoice_prefix=prefix,
            date=now,
            due_date=due,
            status=INVOICE_DRAFT,
            currency=invoice_currency,
            currency_rate=rate,
            tax_jurisdiction=jurisdiction,
            note=note,
            created_by_user_id=ctx.user_id,
        )
        assert_same_tenant(ctx, customer, invoice)
        mark_pending(invoice)
        db.session.add(invoice)

        try:
            for line_data in items:
                _add_line(ctx, invoice, base_currency, line_data)
            _recalculate_totals(invoice, tenant)
        except MoneyOverflowError as exc:
            raise _out_of_range(exc)
        except IntegrityError:
            db.session.rollback()
            if explicit_number:
                raise DuplicateInvoiceNumber(f"Invoice number '{explicit_number}' already exists")
            raise

        entry = stage_audit(ctx, "invoice.created", entity=invoice, meta={
            "invoice_number": invoice.invoice_number,
            "customer_id": customer.id,
            "total": invoice.total,
            "currency": invoice.currency,
        })
        commit_with_audit([entry])
        return invoice

    # A generated number that lost a race is retried with a fresh one
    return run_with_retry(_op, retry_on=(IntegrityError,))


# =============================================================================
# DRAFT EDITING
# =============================================================================

def add_invoice_item(
    ctx: ActorContext,
    invoice_id: int,
    item_id: int,
    quantity="1",
    *,
    unit_price=None,
    description: str | None = None,
) -> InvoiceItem:
    """Append a snapshot line to a DRAFT invoice and recompute totals."""
    def _op():
        tenant = require_active_tenant(ctx)
        invoice = require_tenant_entity(Invoice, invoice_id, ctx, lock=True)
        _require_draft(invoice, "add lines")

        try:
            line = _add_line(ctx, invoice, tenant_currency(tenant), {
                "item_id": item_id,
                "quantity": quantity,
                "unit_price": unit_price,
                "description": description,
            })
            _recalculate_totals(invoice, tenant)
        except MoneyOverflowError as exc:
            raise _out_of_range(exc, invoice)
        mark_pending(invoice)

        entry = stage_audit(ctx, "invoice.line_added", entity=invoice, meta={
            "line_id": line.id, "item_id": item_id, "line_total": line.line_total,
        })
        commit_with_audit([entry])
        return line

    return run_with_retry(_op)


def remove_invoice_item(ctx: ActorContext, invoice_id: int, line_id: int) -> Invoice:
    """Remove a line from a DRAFT invoice, returning its stock."""
    def _op():
        tenant = require_active_tenant(ctx)
        invoice = require_tenant_entity(Invoice, invoice_id, ctx, lock=True)
        _require_draft(invoice, "remove lines")

        line = require_tenant_entity(InvoiceItem, line_id, ctx)
        if line.invoice_id != invoice.id:
            raise ValidationError(f"Line {line_id} is not on invoice {invoice_id}")

        item = require_tenant_entity(Item, line.item_id, ctx, lock=True)
        _return_stock(item, line.quantity)

        meta = {"line_id": line.id, "item_id": line.item_id, "line_total": Money.of(line.line_total, invoice.currency).amount}
        db.session.delete(line)
        db.session.flush()
        db.session.expire(invoice, ["items"])

        _recalculate_totals(invoice, tenant)
        mark_pending(invoice)
        commit_with_audit([stage_audit(ctx, "invoice.line_removed", entity=invoice, meta=meta)])
        return invoice

    return run_with_retry(_op)


# =============================================================================
# TRANSITIONS
# =============================================================================

def send_locked(invoice: Invoice) -> None:
    """DRAFT -> SENT on an already locked invoice. Lines freeze from here on."""
    _require_draft(invoice, "send")
    if not _lines(invoice):
        raise ValidationError("Cannot send an invoice without lines", state=invoice.to_dict())
    invoice.sent_at = utcnow()
    refresh_payment_state(invoice)
    mark_pending(invoice)


def send_invoice(ctx: ActorContext, invoice_id: int) -> Invoice:
    def _op():
        require_active_tenant(ctx)
        invoice = require_tenant_entity(Invoice, invoice_id, ctx, lock=True)
        send_locked(invoice)
        commit_with_audit([stage_audit(ctx, "invoice.sent", entity=invoice, meta={
            "invoice_number": invoice.invoice_number, "total": invoice.money("total").amount,
        })])
        return invoice

    return run_with_retry(_op)


def cancel_invoice(ctx: ActorContext, invoice_id: int, reason: str | None = None) -> Invoice:
    """
    Cancel a DRAFT or unpaid SENT invoice.

    WHY: A paid invoice must be refunded (void_payment) before it can be
    cancelled, so money never disappears from the ledger. PENDING payments
    block too: the gateway may still confirm them.

    Raises:
        InvalidStateTransition: already cancelled, anything paid, or payments pending
    """
    def _op():
        invoice = require_tenant_entity(Invoice, invoice_id, ctx, lock=True)

        if invoice.status == INVOICE_CANCELLED:
            raise InvalidStateTransition("Invoice is already cancelled", state=invoice.to_dict())
        if invoice.status not in (INVOICE_DRAFT, INVOICE_SENT) or invoice.money("amount_paid").is_positive():
            raise InvalidStateTransition(
                f"Cannot cancel a {invoice.status} invoice; refund its payments first",
                state=invoice.to_dict(),
            )
        if _payments(invoice, PAYMENT_PENDING):
            raise InvalidStateTransition(
                "Cannot cancel while payments are pending confirmation",
                state=invoice.to_dict(),
            )

        for line in _lines(invoice):
            item = lock_for_update(db.session.query(Item).filter_by(id=line.item_id)).first()
            if item is not None:
                _return_stock(item, line.quantity)

        previous = invoice.status
        invoice.cancelled_at = utcnow()
        invoice.cancel_reason = reason
        invoice.status = INVOICE_CANCELLED
        mark_pending(invoice)

        commit_with_audit([stage_audit(ctx, "invoice.cancelled", entity=invoice, meta={
            "from_status": previous, "reason": reason,
        })])
        return invoice

    return run_with_retry(_op)


def delete_invoice(ctx: ActorContext, invoice_id: int) -> None:
    """Hard-delete a DRAFT invoice that never had payments."""
    def _op():
        invoice = require_tenant_entity(Invoice, invoice_id, ctx, lock=True)
        _require_draft(invoice, "delete")
        if _payments(invoice):
            raise InvalidStateTransition(
                "Invoices with payments cannot be deleted", state=invoice.to_dict()
            )

        for line in _lines(invoice):
            item = lock_for_update(db.session.query(Item).filter_by(id=line.item_id)).first()
            if item is not None:
                _return_stock(item, line.quantity)
            db.session.delete(line)

        entry = stage_audit(ctx, "invoice.deleted", entity=invoice, meta={
            "invoice_number": invoice.invoice_number,
        })
        db.session.delete(invoice)
        commit_with_audit([entry])

    run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_invoice(ctx: ActorContext, invoice_id: int) -> Invoice:
    return require_tenant_entity(Invoice, invoice_id, ctx)


def get_invoice_lines(ctx: ActorContext, invoice_id: int) -> list[InvoiceItem]:
    return _lines(get_invoice(ctx, invoice_id))


def list_invoices(
    ctx: ActorContext,
    *,
    status: str | None = None,
    customer_id: int | None = None,
    unpaid_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Invoice], int]:
    """
    Page through the tenant's invoices, newest first.

    Returns:
        (invoices, total matching count)
    """
    if status and status not in VALID_INVOICE_STATUSES:
        raise ValidationError(f"Invalid status: {status}. Must be one of {list(VALID_INVOICE_STATUSES)}")
    if limit <= 0 or offset < 0:
        raise ValidationError("limit must be positive and offset non-negative")

    query = scoped_query(Invoice, ctx)
    if status:
        query = query.filter(Invoice.status == status)
    if customer_id is not None:
        query = query.filter(Invoice.customer_id == customer_id)
    if unpaid_only:
        query = query.filter(Invoice.status.in_((INVOICE_SENT, INVOICE_PARTIALLY_PAID)))

    count = query.count()
    invoices = query.order_by(Invoice.id.desc()).offset(offset).limit(min(limit, 500)).all()
    return invoices, count


def get_invoice_summary(ctx: ActorContext) -> dict:
    """Invoice counts per status and outstanding balances per currency."""
    counts = dict(
        scoped_query(Invoice, ctx)
        .with_entities(Invoice.status, func.count(Invoice.id))
        .group_by(Invoice.status)
        .all()
    )

    outstanding: dict[str, Money] = {}
    collected: dict[str, Money] = {}
    for invoice in scoped_query(Invoice, ctx).filter(Invoice.status != INVOICE_CANCELLED).all():
        cur = invoice.currency
        if invoice.status in (INVOICE_SENT, INVOICE_PARTIALLY_PAID):
            outstanding[cur] = outstanding.get(cur, Money.zero(cur)) + invoice.money("balance_due")
        collected[cur] = collected.get(cur, Money.zero(cur)) + invoice.money("amount_paid")

    return {
        "counts": {s: counts.get(s, 0) for s in VALID_INVOICE_STATUSES},
        "outstanding": {cur: str(m.amount) for cur, m in sorted(outstanding.items())},
        "collected": {cur: str(m.amount) for cur, m in sorted(collected.items())},
    }
