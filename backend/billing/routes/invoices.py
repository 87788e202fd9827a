# Overview: Flask API routes for invoice operations; parses input and returns JSON responses.

# backend/billing/routes/invoices.py
"""
Invoice API Routes

DESIGN:
- Create DRAFT invoices from catalog items, edit lines while DRAFT
- Send, cancel and delete through the ledger state machine
- Every error answers {"error", "kind", "state"} with the domain status code

SECURITY:
- X-Tenant-Id scopes every call (see require_tenant_context)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import billing_error_response, require_tenant_context
from ..errors import BillingError
from ..services import invoice_service


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


def _invoice_payload(invoice) -> dict:
    data = invoice.to_dict()
    data["items"] = [line.to_dict() for line in invoice_service.get_invoice_lines(g.actor, invoice.id)]
    return data


@invoices_bp.post("")
@require_tenant_context
def create_invoice_route():
    """
    Create a DRAFT invoice.

    Request body:
    {
        "customer_id": 3,
        "items": [{"item_id": 7, "quantity": 2, "unit_price": 50.00}],
        "invoice_number": "INV-2024-001",  (optional)
        "currency": "EUR", "currency_rate": 0.92,  (optional)
        "jurisdiction": "CA", "due_date": "2024-07-01T00:00:00Z", "note": "..."
    }

    Returns:
        201: Invoice with lines
        400/403/404/409: Domain error
    """
    try:
        data = request.get_json() or {}
        customer_id = data.get("customer_id")
        if not customer_id:
            return jsonify({"error": "customer_id is required", "kind": "ValidationError", "state": None}), 400

        invoice = invoice_service.create_invoice(
            g.actor,
            customer_id,
            data.get("items") or [],
            invoice_number=data.get("invoice_number"),
            currency=data.get("currency"),
            currency_rate=data.get("currency_rate"),
            jurisdiction=data.get("jurisdiction"),
            due_date=data.get("due_date"),
            note=data.get("note"),
        )
        return jsonify({"invoice": _invoice_payload(invoice)}), 201

    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("")
@require_tenant_context
def list_invoices_route():
    """
    List invoices.

    Query params: status, customer_id, unpaid_only=true, limit (default 50), offset
    """
    try:
        invoices, total = invoice_service.list_invoices(
            g.actor,
            status=request.args.get("status"),
            customer_id=request.args.get("customer_id", type=int),
            unpaid_only=request.args.get("unpaid_only", "").lower() in ("1", "true", "yes"),
            limit=request.args.get("limit", 50, type=int),
            offset=request.args.get("offset", 0, type=int),
        )
        return jsonify({
            "invoices": [invoice.to_dict() for invoice in invoices],
            "total": total,
        }), 200

    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list invoices")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/summary")
@require_tenant_context
def invoice_summary_route():
    try:
        return jsonify(invoice_service.get_invoice_summary(g.actor)), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build invoice summary")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/<int:invoice_id>")
@require_tenant_context
def get_invoice_route(invoice_id: int):
    try:
        invoice = invoice_service.get_invoice(g.actor, invoice_id)
        return jsonify({"invoice": _invoice_payload(invoice)}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<int:invoice_id>/items")
@require_tenant_context
def add_invoice_item_route(invoice_id: int):
    """
    Add a line to a DRAFT invoice.

    Request body: {"item_id": 7, "quantity": 1.5, "unit_price": 20.00, "description": "..."}
    """
    try:
        data = request.get_json() or {}
        if not data.get("item_id"):
            return jsonify({"error": "item_id is required", "kind": "ValidationError", "state": None}), 400

        invoice_service.add_invoice_item(
            g.actor,
            invoice_id,
            data["item_id"],
            data.get("quantity", 1),
            unit_price=data.get("unit_price"),
            description=data.get("description"),
        )
        invoice = invoice_service.get_invoice(g.actor, invoice_id)
        return jsonify({"invoice": _invoice_payload(invoice)}), 201

    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add invoice line")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.delete("/<int:invoice_id>/items/<int:line_id>")
@require_tenant_context
def remove_invoice_item_route(invoice_id: int, line_id: int):
    try:
        invoice = invoice_service.remove_invoice_item(g.actor, invoice_id, line_id)
        return jsonify({"invoice": _invoice_payload(invoice)}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to remove invoice line")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<int:invoice_id>/send")
@require_tenant_context
def send_invoice_route(invoice_id: int):
    try:
        invoice = invoice_service.send_invoice(g.actor, invoice_id)
        return jsonify({"invoice": invoice.to_dict()}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to send invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<int:invoice_id>/cancel")
@require_tenant_context
def cancel_invoice_route(invoice_id: int):
    """
    Cancel an unpaid invoice.

    Request body: {"reason": "Customer withdrew"}  (optional)

    Returns:
        200: Cancelled invoice
        409: Invoice has payments (refund first) or payments are pending
    """
    try:
        data = request.get_json(silent=True) or {}
        invoice = invoice_service.cancel_invoice(g.actor, invoice_id, reason=data.get("reason"))
        return jsonify({"invoice": invoice.to_dict()}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.delete("/<int:invoice_id>")
@require_tenant_context
def delete_invoice_route(invoice_id: int):
    try:
        invoice_service.delete_invoice(g.actor, invoice_id)
        return jsonify({"deleted": invoice_id}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/<int:invoice_id>/verify")
@require_tenant_context
def verify_invoice_route(invoice_id: int):
    """Run the ledger invariant checks on one invoice."""
    try:
        invoice = invoice_service.get_invoice(g.actor, invoice_id)
        problems = invoice_service.verify_invoice_invariants(invoice)
        return jsonify({"invoice_id": invoice_id, "consistent": not problems, "problems": problems}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify invoice")
        return jsonify({"error": "Internal server error"}), 500
