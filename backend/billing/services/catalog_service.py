# Overview: Service-layer operations for vendors, customers and items.

"""
Catalog Store

Simple keyed, tenant-scoped entities. Rules:
- Every read and write is scoped by ctx.tenant_id
- Item SKU is normalized (trimmed, uppercased) and unique per tenant
- Item prices are stored in the tenant's base currency at its minor units
- Records referenced by invoices cannot be deleted (the ledger keeps them)
- Every mutation marks the record PENDING for sync and is audited
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import DuplicateEntityError, InvalidStateTransition, ValidationError
from ..models import Customer, Invoice, InvoiceItem, Item, Vendor
from billing.money import Money, MoneyOverflowError, round_quantity
from .audit_service import commit_with_audit, stage_audit
from .concurrency import run_with_retry
from .sync_service import mark_pending
from .tenant_service import ActorContext, require_active_tenant, require_tenant_entity, scoped_query


VENDOR_FIELDS = {"name", "email", "phone", "address", "tax_id"}
CUSTOMER_FIELDS = {"name", "email", "phone", "address"}
ITEM_FIELDS = {"name", "sku", "description", "unit_price", "quantity"}


def tenant_currency(tenant) -> str:
    return (tenant.setting("currency") or current_app.config.get("BILLING_DEFAULT_CURRENCY", "USD")).upper()


def normalize_sku(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().upper()
    return normalized or None


def _clean(fields: dict, allowed: set[str]) -> dict:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"Unknown or read-only fields: {sorted(unknown)}")
    cleaned = {}
    for key, value in fields.items():
        cleaned[key] = value.strip() if isinstance(value, str) else value
    if "name" in cleaned and not cleaned["name"]:
        raise ValidationError("name is required")
    return cleaned


def _coerce_item_fields(fields: dict, currency: str) -> dict:
    if "sku" in fields:
        fields["sku"] = normalize_sku(fields["sku"])
    if "unit_price" in fields:
        try:
            price = Money.of(fields["unit_price"], currency)
        except (TypeError, ValueError, MoneyOverflowError) as exc:
            raise ValidationError(f"unit_price: {exc}")
        if price.is_negative():
            raise ValidationError("unit_price cannot be negative")
        fields["unit_price"] = price.amount
    if "quantity" in fields:
        try:
            fields["quantity"] = round_quantity(fields["quantity"])
        except (TypeError, ValueError, MoneyOverflowError) as exc:
            raise ValidationError(f"quantity: {exc}")
    return fields


def _ensure_unique_sku(ctx: ActorContext, sku: str | None, exclude_id: int | None = None) -> None:
    if not sku:
        return
    query = scoped_query(Item, ctx).filter(Item.sku == sku)
    if exclude_id is not None:
        query = query.filter(Item.id != exclude_id)
    if query.first():
        raise DuplicateEntityError(f"SKU '{sku}' already exists in this tenant")


# =============================================================================
# GENERIC HELPERS
# =============================================================================

def _create(ctx: ActorContext, model, fields: dict, action: str):
    require_active_tenant(ctx)
    record = model(tenant_id=ctx.tenant_id, **fields)
    mark_pending(record)
    db.session.add(record)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateEntityError(f"{model.__name__} violates a uniqueness rule")
    commit_with_audit([stage_audit(ctx, action, entity=record, meta=fields)])
    return record


def _update(ctx: ActorContext, model, record_id: int, fields: dict, action: str, *, prepare=None):
    def _op():
        record = require_tenant_entity(model, record_id, ctx, lock=True)
        changes = prepare(record, dict(fields)) if prepare else dict(fields)
        for key, value in changes.items():
            setattr(record, key, value)
        mark_pending(record)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateEntityError(f"{model.__name__} violates a uniqueness rule")
        commit_with_audit([stage_audit(ctx, action, entity=record, meta=changes)])
        return record

    return run_with_retry(_op)


def _delete(ctx: ActorContext, model, record_id: int, action: str, *, in_use=None):
    def _op():
        record = require_tenant_entity(model, record_id, ctx, lock=True)
        if in_use is not None and in_use(record):
            raise InvalidStateTransition(
                f"{model.__name__} {record_id} is referenced by invoices and cannot be deleted",
                state=record.to_dict(),
            )
        entry = stage_audit(ctx, action, entity=record, meta={"name": record.name})
        db.session.delete(record)
        commit_with_audit([entry])

    run_with_retry(_op)


# =============================================================================
# VENDORS
# =============================================================================

def create_vendor(ctx: ActorContext, name: str, **fields) -> Vendor:
    data = _clean({"name": name, **fields}, VENDOR_FIELDS)
    return _create(ctx, Vendor, data, "vendor.created")


def update_vendor(ctx: ActorContext, vendor_id: int, **fields) -> Vendor:
    return _update(ctx, Vendor, vendor_id, _clean(fields, VENDOR_FIELDS), "vendor.updated")


def get_vendor(ctx: ActorContext, vendor_id: int) -> Vendor:
    return require_tenant_entity(Vendor, vendor_id, ctx)


def list_vendors(ctx: ActorContext) -> list[Vendor]:
    return scoped_query(Vendor, ctx).order_by(Vendor.name).all()


def delete_vendor(ctx: ActorContext, vendor_id: int) -> None:
    _delete(ctx, Vendor, vendor_id, "vendor.deleted")


# =============================================================================
# CUSTOMERS
# =============================================================================

def create_customer(ctx: ActorContext, name: str, **fields) -> Customer:
    data = _clean({"name": name, **fields}, CUSTOMER_FIELDS)
    return _create(ctx, Customer, data, "customer.created")


def update_customer(ctx: ActorContext, customer_id: int, **fields) -> Customer:
    return _update(ctx, Customer, customer_id, _clean(fields, CUSTOMER_FIELDS), "customer.updated")


def get_customer(ctx: ActorContext, customer_id: int) -> Customer:
    return require_tenant_entity(Customer, customer_id, ctx)


def list_customers(ctx: ActorContext) -> list[Customer]:
    return scoped_query(Customer, ctx).order_by(Customer.name).all()


def delete_customer(ctx: ActorContext, customer_id: int) -> None:
    def _has_invoices(customer) -> bool:
        return db.session.query(Invoice.id).filter_by(customer_id=customer.id).first() is not None

    _delete(ctx, Customer, customer_id, "customer.deleted", in_use=_has_invoices)


# =============================================================================
# ITEMS
# =============================================================================

def create_item(ctx: ActorContext, name: str, unit_price, **fields) -> Item:
    tenant = require_active_tenant(ctx)
    data = _clean({"name": name, "unit_price": unit_price, **fields}, ITEM_FIELDS)
    data = _coerce_item_fields(data, tenant_currency(tenant))
    data.setdefault("quantity", round_quantity(0))
    _ensure_unique_sku(ctx, data.get("sku"))
    return _create(ctx, Item, data, "item.created")


def update_item(ctx: ActorContext, item_id: int, **fields) -> Item:
    """
    Edit an item. Price changes never reach existing invoice lines, which
    hold their own snapshot.
    """
    tenant = require_active_tenant(ctx)
    data = _coerce_item_fields(_clean(fields, ITEM_FIELDS), tenant_currency(tenant))

    def _prepare(item, changes):
        if "sku" in changes:
            _ensure_unique_sku(ctx, changes["sku"], exclude_id=item.id)
        return changes

    return _update(ctx, Item, item_id, data, "item.updated", prepare=_prepare)


def get_item(ctx: ActorContext, item_id: int) -> Item:
    return require_tenant_entity(Item, item_id, ctx)


def list_items(ctx: ActorContext, search: str | None = None) -> list[Item]:
    query = scoped_query(Item, ctx)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(db.or_(Item.name.ilike(pattern), Item.sku.ilike(pattern)))
    return query.order_by(Item.name).all()


def delete_item(ctx: ActorContext, item_id: int) -> None:
    def _on_invoices(item) -> bool:
        return db.session.query(InvoiceItem.id).filter_by(item_id=item.id).first() is not None

    _delete(ctx, Item, item_id, "item.deleted", in_use=_on_invoices)
