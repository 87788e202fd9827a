# Overview: Service-layer operations for the audit trail; append-only writes and reads.

"""
Audit Recorder

Every state-changing ledger, subscription and tenant operation stages one or
more AuditLog entries and hands them to commit_with_audit() instead of calling
db.session.commit() itself.

MODES (BILLING_AUDIT_STRICT):
- best-effort (default): the primary work commits first; audit entries are
  written in a second transaction. A failure there is rolled back, logged and
  counted, and never undoes the primary operation.
- strict: entries are added to the primary transaction; if they cannot be
  written, nothing is.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditLog
from billing.time_utils import utcnow


logger = logging.getLogger(__name__)

_failure_lock = threading.Lock()
_failure_count = 0


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


def stage_audit(
    ctx,
    action: str,
    *,
    entity=None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    tenant_id: int | None = None,
    meta: dict | None = None,
) -> AuditLog:
    """
    Build (but do not persist) an audit entry.

    Call after flush so entity.id is populated.
    """
    if entity is not None:
        entity_type = entity_type or type(entity).__name__
        entity_id = entity_id if entity_id is not None else entity.id

    return AuditLog(
        tenant_id=tenant_id if tenant_id is not None else getattr(ctx, "tenant_id", None),
        user_id=getattr(ctx, "user_id", None),
        actor=getattr(ctx, "actor_label", "system"),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta=_jsonable(meta or {}),
        ip_address=getattr(ctx, "ip_address", None),
        created_at=utcnow(),
    )


def commit_with_audit(entries: list[AuditLog | None]) -> None:
    """Commit the current unit of work together with its audit entries."""
    entries = [e for e in entries if e is not None]

    if current_app.config.get("BILLING_AUDIT_STRICT", False):
        db.session.add_all(entries)
        db.session.commit()
        return

    db.session.commit()
    if not entries:
        return

    try:
        db.session.add_all(entries)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        _record_failure()
        logger.exception(
            "Audit write failed (primary operation kept): %s",
            ", ".join(e.action for e in entries),
        )


def record_audit(ctx, action: str, **kwargs) -> None:
    """Stage and write a single entry on its own."""
    commit_with_audit([stage_audit(ctx, action, **kwargs)])


def _record_failure() -> None:
    global _failure_count
    with _failure_lock:
        _failure_count += 1


def audit_failure_count() -> int:
    """Number of best-effort audit writes that failed in this process."""
    return _failure_count


def reset_audit_failure_count() -> None:
    global _failure_count
    with _failure_lock:
        _failure_count = 0


def list_audit_entries(ctx, action: str | None = None, limit: int = 100) -> list[AuditLog]:
    query = db.session.query(AuditLog).filter(AuditLog.tenant_id == ctx.require_tenant())
    if action:
        query = query.filter(AuditLog.action == action)
    return query.order_by(AuditLog.id.desc()).limit(limit).all()
