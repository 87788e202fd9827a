# Overview: Flask API routes for packages and subscriptions; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import billing_error_response, require_tenant_context
from ..errors import BillingError
from ..services import package_service, subscription_service
from billing.time_utils import parse_iso_datetime


subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


def _now_param(data: dict):
    # Deterministic clock for back-office tooling; defaults to server time
    return parse_iso_datetime(data.get("now")) if data.get("now") else None


@subscriptions_bp.get("")
@require_tenant_context
def list_subscriptions_route():
    try:
        subscriptions = subscription_service.list_subscriptions(g.actor)
        return jsonify({"subscriptions": [s.to_dict() for s in subscriptions]}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list subscriptions")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/current")
@require_tenant_context
def current_subscription_route():
    """Current TRIAL/ACTIVE subscription and the capabilities it grants."""
    try:
        subscription = subscription_service.get_current_subscription(g.actor)
        if subscription is None:
            return jsonify({"subscription": None, "capabilities": []}), 200
        capabilities = sorted(package_service.capabilities_for(subscription.package))
        return jsonify({"subscription": subscription.to_dict(), "capabilities": capabilities}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get current subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("")
@require_tenant_context
def start_subscription_route():
    """
    Start a subscription.

    Request body:
    {
        "package_id": 2,
        "seats": 5,
        "trial_days": 14,  (optional)
        "auto_renew": true,
        "replace": false  (true switches plans, cancelling the current one)
    }

    Returns:
        201: Subscription
        409: Tenant already subscribed (SubscriptionConflict)
    """
    try:
        data = request.get_json() or {}
        if not data.get("package_id"):
            return jsonify({"error": "package_id is required", "kind": "ValidationError", "state": None}), 400

        subscription = subscription_service.start_subscription(
            g.actor,
            data["package_id"],
            seats=data.get("seats", 1),
            trial_days=data.get("trial_days"),
            auto_renew=bool(data.get("auto_renew", False)),
            replace=bool(data.get("replace", False)),
            now=_now_param(data),
        )
        return jsonify({"subscription": subscription.to_dict()}), 201
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to start subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<int:subscription_id>/renew")
@require_tenant_context
def renew_subscription_route(subscription_id: int):
    try:
        data = request.get_json(silent=True) or {}
        subscription = subscription_service.renew(g.actor, subscription_id, now=_now_param(data))
        return jsonify({"subscription": subscription.to_dict()}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to renew subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<int:subscription_id>/cancel")
@require_tenant_context
def cancel_subscription_route(subscription_id: int):
    try:
        subscription = subscription_service.cancel_subscription(g.actor, subscription_id)
        return jsonify({"subscription": subscription.to_dict()}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/packages")
@require_tenant_context
def list_packages_route():
    try:
        packages = package_service.list_packages(
            g.actor, include_inactive=request.args.get("all", "").lower() in ("1", "true")
        )
        return jsonify({"packages": [
            {**p.to_dict(), "capabilities": sorted(package_service.capabilities_for(p))}
            for p in packages
        ]}), 200
    except BillingError as e:
        return billing_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list packages")
        return jsonify({"error": "Internal server error"}), 500
