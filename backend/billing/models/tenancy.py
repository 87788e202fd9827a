from __future__ import annotations

from ..extensions import db
from billing.time_utils import to_utc_z
from .sync import SyncTrackedMixin


ROLE_SUPER_ADMIN = "Super_Admin"
ROLE_ADMIN = "Admin"
ROLE_USER = "User"
VALID_ROLES = (ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_USER)


class Tenant(db.Model):
    """
    Multi-tenant root: every customer organization is a Tenant.

    All scoped entities carry tenant_id and never move between tenants.
    Tenants are soft-deleted (deleted_at); rows are never removed while
    children exist.

    version_id doubles as the per-tenant lock for operations that must be
    serialized across a whole tenant (subscription exclusivity).
    """
    __tablename__ = "tenants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False, default="")
    slug = db.Column(db.String(100), nullable=False, unique=True, index=True)

    # Opaque JSON; the engine reads "currency", "tax_rate" and "invoice_prefix"
    settings = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def setting(self, key: str, default=None):
        return (self.settings or {}).get(key, default)

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} slug={self.slug!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "slug": self.slug,
            "settings": self.settings or {},
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "deleted_at": to_utc_z(self.deleted_at),
            "version_id": self.version_id,
        }


class User(SyncTrackedMixin, db.Model):
    """
    Application user.

    tenant_id is nullable for platform-level administrators (Super_Admin).
    Credentials and sessions are issued by the external auth layer.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(32), nullable=False, default=ROLE_USER)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_seen_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())

    tenant = db.relationship("Tenant", backref=db.backref("users", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "last_seen_at": to_utc_z(self.last_seen_at),
            "created_at": to_utc_z(self.created_at),
            **self.sync_dict(),
        }


class Session(db.Model):
    """Ephemeral credential record per user and tenant; purged after expiry."""
    __tablename__ = "sessions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    session_token = db.Column(db.String(255), nullable=False, unique=True)
    expires = db.Column(db.DateTime, nullable=False, index=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))


class DocumentSequence(db.Model):
    """
    Atomic per-tenant document sequences.

    Prevents races when generating invoice numbers.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "document_type", name="uq_doc_sequences_tenant_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now(), onupdate=db.func.now())
