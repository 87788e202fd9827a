"""
Tenant Isolation Guard and tenant lifecycle.

SECURITY INVARIANTS:
1. Every engine call receives an explicit ActorContext carrying tenant_id
   (supplied by the trusted auth layer; never a hidden global)
2. Any record fetched by id is checked against ctx.tenant_id before use
3. Any two records combined in one write must share a tenant
4. Cross-tenant attempts are rejected with CrossTenantViolation and logged;
   the foreign tenant id is never revealed to the caller

The guard is stateless: no locking, no writes.

USAGE:
    from billing.services.tenant_service import ActorContext, require_tenant_entity

    ctx = ActorContext(tenant_id=1, user_id=7, role="Admin")
    invoice = require_tenant_entity(Invoice, invoice_id, ctx)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    CrossTenantViolation,
    DuplicateEntityError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from ..models import Tenant, User
from ..models.tenancy import ROLE_ADMIN, ROLE_SUPER_ADMIN, ROLE_USER, VALID_ROLES
from billing.time_utils import utcnow
from .audit_service import commit_with_audit, stage_audit
from .concurrency import lock_for_update


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActorContext:
    """Authenticated caller identity, threaded through every engine call."""

    tenant_id: int | None
    user_id: int | None = None
    role: str = ROLE_USER
    ip_address: str | None = None

    @classmethod
    def system(cls, tenant_id: int | None) -> "ActorContext":
        """Context for sweeps and gateway webhooks (no human actor)."""
        return cls(tenant_id=tenant_id, user_id=None, role="system")

    @property
    def is_system(self) -> bool:
        return self.role == "system"

    @property
    def is_admin(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_SUPER_ADMIN)

    @property
    def actor_label(self) -> str:
        if self.is_system or self.user_id is None:
            return "system"
        return f"{self.role}:{self.user_id}"

    def require_tenant(self) -> int:
        if self.tenant_id is None:
            raise CrossTenantViolation("Tenant context not established")
        return self.tenant_id


# =============================================================================
# GUARD
# =============================================================================

def _tenant_of(value) -> int | None:
    if value is None or isinstance(value, int):
        return value
    if isinstance(value, ActorContext):
        return value.tenant_id
    if hasattr(value, "tenant_id"):
        return value.tenant_id
    raise TypeError(f"Cannot determine tenant of {type(value).__name__}")


def assert_same_tenant(*scoped) -> int:
    """
    Validate that every argument (models, contexts or raw tenant ids) belongs
    to one tenant. Returns that tenant id.
    """
    tenant_ids = [_tenant_of(value) for value in scoped]
    if not tenant_ids or any(t is None for t in tenant_ids):
        raise CrossTenantViolation("Tenant scope missing on a tenant-scoped record")

    if len(set(tenant_ids)) > 1:
        described = ", ".join(
            f"{type(v).__name__}({getattr(v, 'id', v)})->{t}" for v, t in zip(scoped, tenant_ids)
        )
        logger.warning("Cross-tenant reference rejected: %s", described)
        raise CrossTenantViolation("Referenced record does not belong to this tenant")

    return tenant_ids[0]


def require_tenant_entity(model, entity_id: int, ctx: ActorContext, *, lock: bool = False):
    """
    Load a tenant-scoped record by id and verify ownership.

    Raises NotFoundError when the row does not exist at all and
    CrossTenantViolation when it belongs to another tenant.
    """
    tenant_id = ctx.require_tenant()

    query = db.session.query(model).filter_by(id=entity_id)
    if lock:
        query = lock_for_update(query)
    entity = query.first()

    if entity is None:
        raise NotFoundError(f"{model.__name__} {entity_id} not found")

    if entity.tenant_id != tenant_id:
        logger.warning(
            "Cross-tenant access denied: %s %s belongs to tenant %s, caller tenant %s (actor %s)",
            model.__name__, entity_id, entity.tenant_id, tenant_id, ctx.actor_label,
        )
        raise CrossTenantViolation(f"{model.__name__} {entity_id} not found in this tenant")

    return entity


def scoped_query(model, ctx: ActorContext):
    """
    Base query filtered to the caller's tenant.

    Usage:
        customers = scoped_query(Customer, ctx).order_by(Customer.name).all()
    """
    return db.session.query(model).filter(model.tenant_id == ctx.require_tenant())


# =============================================================================
# TENANT LIFECYCLE
# =============================================================================

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_STRIP.sub("-", name.strip().lower()).strip("-")


def create_tenant(name: str, email: str = "", slug: str | None = None,
                  settings: dict | None = None, ctx: ActorContext | None = None) -> Tenant:
    """
    Create a tenant (signup). Slugs are globally unique.
    """
    if not name or not name.strip():
        raise ValidationError("Tenant name is required")

    final_slug = slugify(slug or name)
    if not final_slug:
        raise ValidationError("Tenant slug must contain letters or digits")

    existing = db.session.query(Tenant).filter_by(slug=final_slug).first()
    if existing:
        raise DuplicateEntityError(f"Tenant slug '{final_slug}' already in use")

    tenant = Tenant(name=name.strip(), email=(email or "").strip(), slug=final_slug, settings=settings or {})
    db.session.add(tenant)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateEntityError(f"Tenant slug '{final_slug}' already in use")

    actor = ctx or ActorContext.system(tenant.id)
    entry = stage_audit(actor, "tenant.created", entity=tenant, tenant_id=tenant.id,
                        meta={"slug": tenant.slug})
    commit_with_audit([entry])
    return tenant


def get_tenant(tenant_id: int) -> Tenant:
    tenant = db.session.query(Tenant).filter_by(id=tenant_id).first()
    if not tenant:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    return tenant


def require_active_tenant(ctx: ActorContext) -> Tenant:
    """Tenant of the caller, rejecting soft-deleted tenants for writes."""
    tenant = get_tenant(ctx.require_tenant())
    if tenant.is_deleted:
        raise InvalidStateTransition("Tenant has been deleted", state=tenant.to_dict())
    return tenant


def list_tenants(include_deleted: bool = False) -> list[Tenant]:
    query = db.session.query(Tenant)
    if not include_deleted:
        query = query.filter(Tenant.deleted_at.is_(None))
    return query.order_by(Tenant.id).all()


def soft_delete_tenant(ctx: ActorContext, tenant_id: int) -> Tenant:
    """
    Soft-delete a tenant. Only a Super_Admin, or an Admin of that same
    tenant, may do this. Children are kept; nothing is hard-deleted.
    """
    if ctx.role != ROLE_SUPER_ADMIN and not (ctx.is_admin and ctx.tenant_id == tenant_id) and not ctx.is_system:
        raise CrossTenantViolation("Not allowed to delete this tenant")

    tenant = get_tenant(tenant_id)
    if tenant.is_deleted:
        raise InvalidStateTransition("Tenant already deleted", state=tenant.to_dict())

    tenant.deleted_at = utcnow()
    entry = stage_audit(ctx, "tenant.deleted", entity=tenant, tenant_id=tenant.id)
    commit_with_audit([entry])
    return tenant


def create_user(tenant_id: int | None, name: str, email: str, role: str = ROLE_USER) -> User:
    """Register a user record (credentials are handled by the auth layer)."""
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role: {role}. Must be one of {list(VALID_ROLES)}")
    if tenant_id is None and role != ROLE_SUPER_ADMIN:
        raise ValidationError("Only Super_Admin users may exist without a tenant")
    if tenant_id is not None:
        get_tenant(tenant_id)

    user = User(tenant_id=tenant_id, name=name, email=email.strip().lower(), role=role)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateEntityError(f"User {email} already exists in this tenant")
    return user
