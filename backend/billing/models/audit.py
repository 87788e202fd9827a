from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from billing.time_utils import to_utc_z


class AuditLog(db.Model):
    """
    Append-only audit trail of state-changing operations.

    tenant_id / user_id are denormalized plain integers without foreign keys
    so entries survive tenant or user deletion. Both are nullable for
    system actions.

    IMMUTABLE: ORM-level guards reject UPDATE and DELETE of existing rows.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_tenant_created", "tenant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    actor = db.Column(db.String(128), nullable=False)  # "<role>:<user_id>" or "system"
    action = db.Column(db.String(64), nullable=False, index=True)  # e.g. "invoice.created"
    entity_type = db.Column(db.String(64), nullable=True)
    entity_id = db.Column(db.Integer, nullable=True)
    meta = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "actor": self.actor,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "meta": self.meta or {},
            "ip_address": self.ip_address,
            "created_at": to_utc_z(self.created_at),
        }


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError(f"AuditLog {target.id} is append-only")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"AuditLog {target.id} is append-only")
