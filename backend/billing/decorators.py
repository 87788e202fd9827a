# Overview: Request decorators and error helpers for API routes.

from functools import wraps
from flask import request, jsonify, g

from .errors import BillingError
from .models.tenancy import ROLE_USER, VALID_ROLES
from .services.tenant_service import ActorContext


def _int_header(name: str) -> int | None:
    raw = request.headers.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer")


def require_tenant_context(f):
    """
    Establish the caller's ActorContext from the trusted auth proxy.

    MULTI-TENANT: Sets g.actor from
    - X-Tenant-Id: tenant scope - REQUIRED
    - X-User-Id: acting user (optional; absent for service calls)
    - X-User-Role: Super_Admin | Admin | User (defaults to User)

    The engine trusts these headers; authentication happens upstream.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            tenant_id = _int_header("X-Tenant-Id")
            user_id = _int_header("X-User-Id")
        except ValueError as e:
            return jsonify({"error": str(e), "kind": "ValidationError", "state": None}), 400

        if tenant_id is None:
            return jsonify({"error": "Tenant context required", "kind": "CrossTenantViolation",
                            "state": None}), 401

        role = (request.headers.get("X-User-Role") or ROLE_USER).strip()
        if role not in VALID_ROLES:
            return jsonify({"error": f"Invalid role: {role}", "kind": "ValidationError",
                            "state": None}), 400

        g.actor = ActorContext(
            tenant_id=tenant_id,
            user_id=user_id,
            role=role,
            ip_address=request.remote_addr,
        )
        return f(*args, **kwargs)

    return decorated_function


def billing_error_response(e: BillingError):
    """JSON body and status for a domain error: {"error", "kind", "state"}."""
    return jsonify(e.to_dict()), e.http_status
