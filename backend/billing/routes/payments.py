# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/billing/routes/payments.py
"""
Payment Processing API Routes

DESIGN:
- Record payments against invoices (reference makes retries idempotent)
- Void completed payments (refund / chargeback)
- Gateway webhook settles PENDING payments

SECURITY:
- X-Tenant-Id scopes every call except the webhook, which derives the tenant
  from the payment (the gateway is authenticated upstream)
- All operations logged to the payment_transactions ledger
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import billing_error_response, require_tenant_context
from ..errors import BillingError
from ..services import invoice_service, payment_service
from ..services.tenant_service import ActorContext


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _invoice_state(invoice_id: int) -> dict:
    return invoice_service.get_invoice(g.actor, invoice_id).to_dict()


# =============================================================================
# PAYMENT CREATION
# =============================================================================

@payments_bp.post("")
@require_tenant_context
def record_payment_route():
    """
    Record a payment against an invoice.

    Request body:
    {
        "invoice_id": 12,
        "amount": 60.00,
        "method": "CREDIT_CARD",
        "reference": "ch_3Nx...",  (optional, idempotency key)
        "paid_date": "2024-06-01T10:00:00Z"  (optional)
    }

    Returns:
        201: Payment and the updated invoice (also for an idempotent replay)
        400: Invalid input
        409: Invoice cancelled
        422: Overpayment rejected (strict policy)
    """
    try:
        data = request.get_json() or {}
        invoice_id = data.get("invoice_id")
        amount = data.get("amount")
        method = data.get("method")

        if not all([invoice_id, amount is not None, method]):
            return jsonify({"error": "invoice_id, amount, and method required",
                            "kind": "ValidationError", "state": None}), 400

        payment = payment_service.record_payment(
            g.actor,
            invoice_id,
            amount,
            method,
            data.get("reference"),
            paid_date=invoice_service.coerce_datetime(data.get("paid_date"), "paid_date"),
        )
        return jsonify({
            "payment": payment.to_dict(),
            "invoice": _invoice_state(invoice_id),
        }), 201

    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("/invoices/<int:invoice_id>")
@require_tenant_context
def get_invoice_payments_route(invoice_id: int):
    """
    Get all payments for an invoice.

    Query params: include_refunded (default true)
    """
    try:
        include_refunded = request.args.get("include_refunded", "true").lower() != "false"
        payments = payment_service.get_invoice_payments(g.actor, invoice_id, include_refunded=include_refunded)
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get invoice payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/invoices/<int:invoice_id>/transactions")
@require_tenant_context
def get_payment_transactions_route(invoice_id: int):
    """Immutable payment ledger for an invoice."""
    try:
        transactions = payment_service.get_payment_transactions(g.actor, invoice_id)
        return jsonify({"transactions": [t.to_dict() for t in transactions]}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get payment transactions")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT VOIDS
# =============================================================================

@payments_bp.post("/<int:payment_id>/void")
@require_tenant_context
def void_payment_route(payment_id: int):
    """
    Void (refund) a completed payment.

    Request body: {"reason": "Customer dispute"}  (optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.void_payment(g.actor, payment_id, reason=data.get("reason"))
        return jsonify({
            "payment": payment.to_dict(),
            "invoice": _invoice_state(payment.invoice_id),
        }), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to void payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# GATEWAY WEBHOOK
# =============================================================================

@payments_bp.post("/webhook")
def payment_webhook_route():
    """
    Gateway confirmation of an asynchronous payment.

    Request body:
    {
        "payment_id": 44,
        "outcome": "COMPLETED" | "FAILED",
        "reason": "card_declined"  (optional)
    }

    Redelivery of the same outcome is answered 200 without changes.
    """
    try:
        data = request.get_json() or {}
        payment_id = data.get("payment_id")
        outcome = data.get("outcome")
        if not payment_id or not outcome:
            return jsonify({"error": "payment_id and outcome required",
                            "kind": "ValidationError", "state": None}), 400

        payment = payment_service.confirm_payment(payment_id, outcome, reason=data.get("reason"))
        invoice = invoice_service.get_invoice(ActorContext.system(payment.tenant_id), payment.invoice_id)
        return jsonify({"payment": payment.to_dict(), "invoice": invoice.to_dict()}), 200

    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500
