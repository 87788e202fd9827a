# Overview: Flask API routes for the offline-first sync protocol; parses input and returns JSON responses.

"""
Sync API Routes

DESIGN:
- Clients pull records by sync status (PENDING / FAILED)
- Clients acknowledge each push with SYNCED (server_version) or FAILED
- A FAILED ack whose server_version supersedes the local base answers 409
  SyncConflict with the record's current state; it is never overwritten
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import billing_error_response, require_tenant_context
from ..errors import BillingError
from ..models.sync import SYNC_PENDING
from ..services import sync_service


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.get("/<entity_type>")
@require_tenant_context
def list_sync_records_route(entity_type: str):
    """
    List records of one type by sync status.

    Query params: status (default PENDING)
    FAILED records include "retry_after_seconds" for the external retry job.
    """
    try:
        status = request.args.get("status", SYNC_PENDING).upper()
        records = sync_service.list_by_status(g.actor, entity_type, status)
        payload = []
        for record in records:
            data = record.to_dict()
            data["retry_after_seconds"] = sync_service.retry_delay(record.sync_attempts or 0)
            payload.append(data)
        return jsonify({"entity_type": entity_type, "status": status, "records": payload}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list sync records")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.get("/<entity_type>/<int:entity_id>")
@require_tenant_context
def get_sync_record_route(entity_type: str, entity_id: int):
    try:
        record = sync_service.get_sync_record(g.actor, entity_type, entity_id)
        return jsonify({"record": record.to_dict()}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get sync record")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.post("/<entity_type>/<int:entity_id>/ack")
@require_tenant_context
def ack_sync_route(entity_type: str, entity_id: int):
    """
    Acknowledge a push.

    Request body:
    {
        "status": "SYNCED" | "FAILED",
        "server_version": 7,
        "reason": "validation failed"  (FAILED only)
    }

    Returns:
        200: Record (SYNCED) or reconcile result {"outcome": "RETRY", ...} (FAILED)
        409: SyncConflict, local change superseded
    """
    try:
        data = request.get_json() or {}
        server_version = data.get("server_version")
        if server_version is not None and (isinstance(server_version, bool) or not isinstance(server_version, int)):
            return jsonify({"error": "server_version must be an integer",
                            "kind": "ValidationError", "state": None}), 400

        outcome = sync_service.apply_sync_result(
            g.actor,
            entity_type,
            entity_id,
            status=data.get("status"),
            server_version=server_version,
            reason=data.get("reason"),
        )
        if isinstance(outcome, sync_service.ReconcileResult):
            return jsonify({"result": outcome.to_dict()}), 200
        return jsonify({"record": outcome.to_dict()}), 200

    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply sync result")
        return jsonify({"error": "Internal server error"}), 500
