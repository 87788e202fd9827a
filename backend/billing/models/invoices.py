from __future__ import annotations

from ..extensions import db
from billing.money import MONEY_PRECISION, MONEY_SCALE, Money, format_amount
from billing.time_utils import to_utc_z
from .sync import SyncTrackedMixin


INVOICE_DRAFT = "DRAFT"
INVOICE_SENT = "SENT"
INVOICE_PARTIALLY_PAID = "PARTIALLY_PAID"
INVOICE_PAID = "PAID"
INVOICE_CANCELLED = "CANCELLED"

PAYMENT_PENDING = "PENDING"
PAYMENT_COMPLETED = "COMPLETED"
PAYMENT_FAILED = "FAILED"
PAYMENT_REFUNDED = "REFUNDED"

PAYMENT_METHODS = (
    "BANK_TRANSFER",
    "CREDIT_CARD",
    "DEBIT_CARD",
    "CASH",
    "CHEQUE",
    "ONLINE",
    "OTHER",
)


class Invoice(SyncTrackedMixin, db.Model):
    """
    Accounting aggregate root.

    INVARIANTS (enforced by services/invoice_service.py after every mutation):
    - total == round(subtotal + tax)
    - balance_due == total - amount_paid (negative only when overpaid is set)
    - amount_paid == sum(COMPLETED payments)
    - status is derived from sent_at / cancelled_at / amount_paid, never set directly
    - CANCELLED freezes every figure above

    version_id serializes concurrent payment/void/cancel calls on one invoice.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_tenant_number"),
        db.Index("ix_invoices_tenant_status", "tenant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    invoice_number = db.Column(db.String(64), nullable=False)
    invoice_prefix = db.Column(db.String(16), nullable=True)
    date = db.Column(db.DateTime, nullable=False)
    due_date = db.Column(db.DateTime, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=INVOICE_DRAFT, index=True)

    currency = db.Column(db.String(3), nullable=False)
    currency_rate = db.Column(db.Numeric(20, 8), nullable=True)
    tax_jurisdiction = db.Column(db.String(64), nullable=True)

    subtotal = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False, default=0)
    tax = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False, default=0)
    total = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False, default=0)
    balance_due = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False, default=0)
    overpaid = db.Column(db.Boolean, nullable=False, default=False)

    note = db.Column(db.Text, nullable=True)

    sent_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("invoices", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def money(self, field: str) -> Money:
        """Read a monetary column as Money in the invoice currency."""
        return Money.of(getattr(self, field) or 0, self.currency)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "customer_id": self.customer_id,
            "invoice_number": self.invoice_number,
            "invoice_prefix": self.invoice_prefix,
            "date": to_utc_z(self.date),
            "due_date": to_utc_z(self.due_date),
            "status": self.status,
            "currency": self.currency,
            "currency_rate": str(self.currency_rate) if self.currency_rate is not None else None,
            "tax_jurisdiction": self.tax_jurisdiction,
            "subtotal": format_amount(self.subtotal, self.currency),
            "tax": format_amount(self.tax, self.currency),
            "total": format_amount(self.total, self.currency),
            "amount_paid": format_amount(self.amount_paid, self.currency),
            "balance_due": format_amount(self.balance_due, self.currency),
            "overpaid": self.overpaid,
            "note": self.note,
            "sent_at": to_utc_z(self.sent_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
            **self.sync_dict(),
        }


class InvoiceItem(SyncTrackedMixin, db.Model):
    """
    Snapshot line copied from an Item when it is added.

    unit_price is already in the invoice currency. Later Item price edits
    never touch existing lines. Immutable once the invoice leaves DRAFT.
    """
    __tablename__ = "invoice_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)

    description = db.Column(db.Text, nullable=True)
    quantity = db.Column(db.Numeric(18, 4), nullable=False)
    unit_price = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)
    line_total = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    invoice = db.relationship("Invoice", backref=db.backref("items", lazy=True, order_by="InvoiceItem.id"))
    item = db.relationship("Item")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "invoice_id": self.invoice_id,
            "item_id": self.item_id,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": format_amount(self.unit_price, self.invoice.currency),
            "line_total": format_amount(self.line_total, self.invoice.currency),
            "created_at": to_utc_z(self.created_at),
            **self.sync_dict(),
        }


class Payment(SyncTrackedMixin, db.Model):
    """
    One settlement attempt against an invoice.

    Only COMPLETED payments count toward the invoice's amount_paid.
    REFUNDED rows stay forever (audit trail); nothing is deleted.
    (invoice_id, reference) is the idempotency key when reference is set.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "reference", name="uq_payments_invoice_reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)
    method = db.Column(db.String(32), nullable=False, default="CREDIT_CARD")
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_COMPLETED, index=True)

    # Gateway transaction id, cheque number, etc.
    reference = db.Column(db.String(128), nullable=True)

    date = db.Column(db.DateTime, nullable=False)
    paid_date = db.Column(db.DateTime, nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    refunded_by_user_id = db.Column(db.Integer, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    invoice = db.relationship("Invoice", backref=db.backref("payments", lazy=True, order_by="Payment.id"))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "invoice_id": self.invoice_id,
            "amount": format_amount(self.amount, self.invoice.currency),
            "method": self.method,
            "status": self.status,
            "reference": self.reference,
            "date": to_utc_z(self.date),
            "paid_date": to_utc_z(self.paid_date),
            "failure_reason": self.failure_reason,
            "created_by_user_id": self.created_by_user_id,
            "refunded_by_user_id": self.refunded_by_user_id,
            "refunded_at": to_utc_z(self.refunded_at),
            "refund_reason": self.refund_reason,
            "version_id": self.version_id,
            **self.sync_dict(),
        }


class PaymentTransaction(db.Model):
    """
    Append-only ledger of payment events.

    TRANSACTION TYPES (amount is signed, in invoice currency):
    - PAYMENT: completed on receipt (+amount)
    - PENDING: accepted, awaiting gateway confirmation (0)
    - CONFIRM: gateway confirmed a pending payment (+amount)
    - FAIL:    gateway rejected a pending payment (0)
    - REFUND:  completed payment voided / charged back (-amount)

    The signed sum per invoice always equals invoice.amount_paid.
    IMMUTABLE: records are never updated or deleted.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_txns_invoice_occurred", "invoice_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)
    amount = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)
    method = db.Column(db.String(32), nullable=False)

    user_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    payment = db.relationship("Payment", backref=db.backref("transactions", lazy=True, order_by="PaymentTransaction.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "payment_id": self.payment_id,
            "invoice_id": self.invoice_id,
            "transaction_type": self.transaction_type,
            "amount": format_amount(self.amount, self.payment.invoice.currency),
            "method": self.method,
            "user_id": self.user_id,
            "reason": self.reason,
            "occurred_at": to_utc_z(self.occurred_at),
        }
