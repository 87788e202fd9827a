# Overview: Service-layer operations for offline-first sync state tracking.

"""
Sync Reconciler

Each mutable tenant record carries a sync state for the offline-first client:

    PENDING  -- local change staged, not yet confirmed by the server
    SYNCED   -- round-trip confirmed at sync_version
    FAILED   -- server rejected the change; reconciliation decides next step

RECONCILIATION:
A pending change remembers the server version it was based on
(sync_base_version). When a push fails and the server reports a newer
authoritative version than that base, the local change has been superseded:
the record is flagged as a CONFLICT and surfaced. It is never overwritten
(last-writer-wins is not acceptable for ledger data). Otherwise the failure is
transient and the external job may RETRY after retry_delay(attempts).

This module only tracks state; it owns no scheduler. mark_* helpers never
commit: they run inside the caller's unit of work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..errors import SyncConflict, ValidationError
from ..models import Customer, Invoice, InvoiceItem, Item, Payment, User, Vendor
from ..models.sync import SYNC_FAILED, SYNC_PENDING, SYNC_SYNCED, VALID_SYNC_STATUSES
from billing.time_utils import utcnow
from .concurrency import run_with_retry
from .tenant_service import ActorContext, require_tenant_entity, scoped_query


logger = logging.getLogger(__name__)

OUTCOME_RETRY = "RETRY"
OUTCOME_CONFLICT = "CONFLICT"

SYNCABLE_MODELS = {
    "vendor": Vendor,
    "customer": Customer,
    "item": Item,
    "invoice": Invoice,
    "invoice_item": InvoiceItem,
    "payment": Payment,
    "user": User,
}


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str
    entity_type: str
    entity_id: int | None
    local_base_version: int
    server_version: int | None
    reason: str | None = None

    @property
    def is_conflict(self) -> bool:
        return self.outcome == OUTCOME_CONFLICT

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "local_base_version": self.local_base_version,
            "server_version": self.server_version,
            "reason": self.reason,
        }


def mark_pending(entity) -> None:
    """
    Record a local mutation.

    The base version is captured only on the first pending edit; chained
    edits before the next sync keep the original base.
    """
    if entity.sync_status != SYNC_PENDING:
        entity.sync_base_version = entity.sync_version or 0
    entity.sync_status = SYNC_PENDING
    entity.sync_error = None


def mark_synced(entity, server_version: int) -> None:
    """Confirm a round-trip at server_version."""
    if server_version is None or server_version < 0:
        raise ValidationError("server_version must be a non-negative integer")
    base = entity.sync_base_version or 0
    if server_version < base:
        raise SyncConflict(
            f"Server version {server_version} is older than local base {base}",
            state=entity.to_dict(),
        )
    entity.sync_status = SYNC_SYNCED
    entity.sync_version = server_version
    entity.sync_base_version = server_version
    entity.sync_error = None
    entity.sync_attempts = 0
    entity.synced_at = utcnow()


def mark_failed(entity, reason: str, server_version: int | None = None) -> ReconcileResult:
    """Record a rejected push and run reconciliation."""
    entity.sync_status = SYNC_FAILED
    entity.sync_attempts = (entity.sync_attempts or 0) + 1
    entity.sync_error = reason
    return reconcile(entity, server_version)


def reconcile(entity, server_version: int | None) -> ReconcileResult:
    """
    Decide whether a FAILED local change can be retried or was superseded.
    """
    base = entity.sync_base_version or 0
    entity_type = type(entity).__name__

    if server_version is not None and server_version > base:
        entity.sync_error = (
            f"conflict: local change based on v{base} superseded by v{server_version}"
        )
        logger.info("Sync conflict on %s %s: base v%s, server v%s",
                    entity_type, entity.id, base, server_version)
        return ReconcileResult(OUTCOME_CONFLICT, entity_type, entity.id, base, server_version,
                               reason=entity.sync_error)

    return ReconcileResult(OUTCOME_RETRY, entity_type, entity.id, base, server_version,
                           reason=entity.sync_error)


def retry_delay(attempts: int) -> float:
    """Exponential backoff hint (seconds) for the external retry job."""
    base = current_app.config.get("BILLING_SYNC_BACKOFF_BASE", 30.0)
    ceiling = current_app.config.get("BILLING_SYNC_BACKOFF_MAX", 3600.0)
    if attempts <= 0:
        return 0.0
    return min(ceiling, base * (2 ** (attempts - 1)))


def resolve_model(entity_type: str):
    model = SYNCABLE_MODELS.get((entity_type or "").strip().lower())
    if model is None:
        raise ValidationError(
            f"Unknown entity type: {entity_type}. Must be one of {sorted(SYNCABLE_MODELS)}"
        )
    return model


def list_by_status(ctx: ActorContext, entity_type: str, status: str = SYNC_PENDING) -> list:
    if status not in VALID_SYNC_STATUSES:
        raise ValidationError(f"Invalid sync status: {status}")
    model = resolve_model(entity_type)
    return scoped_query(model, ctx).filter(model.sync_status == status).order_by(model.id).all()


def apply_sync_result(
    ctx: ActorContext,
    entity_type: str,
    entity_id: int,
    *,
    status: str,
    server_version: int | None = None,
    reason: str | None = None,
):
    """
    Apply a sync acknowledgement from the client protocol.

    Returns the record for SYNCED, a ReconcileResult for FAILED.
    A conflict is reported as SyncConflict after the FAILED state is saved.
    """
    model = resolve_model(entity_type)
    status = (status or "").upper()
    if status not in (SYNC_SYNCED, SYNC_FAILED):
        raise ValidationError("status must be SYNCED or FAILED")

    def _op():
        entity = require_tenant_entity(model, entity_id, ctx, lock=True)
        if status == SYNC_SYNCED:
            mark_synced(entity, server_version)
            db.session.commit()
            return entity

        result = mark_failed(entity, reason or "rejected by server", server_version)
        db.session.commit()
        return result

    outcome = run_with_retry(_op)
    if isinstance(outcome, ReconcileResult) and outcome.is_conflict:
        entity = db.session.query(model).filter_by(id=entity_id).first()
        raise SyncConflict(outcome.reason, state=entity.to_dict() if entity else None)
    return outcome


def get_sync_record(ctx: ActorContext, entity_type: str, entity_id: int):
    model = resolve_model(entity_type)
    return require_tenant_entity(model, entity_id, ctx)
