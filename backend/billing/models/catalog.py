from __future__ import annotations

from ..extensions import db
from billing.money import MONEY_PRECISION, MONEY_SCALE, format_amount
from billing.time_utils import to_utc_z
from .sync import SyncTrackedMixin


def _amount(value) -> str | None:
    return str(value) if value is not None else None


class Vendor(SyncTrackedMixin, db.Model):
    """Tenant-scoped supplier counterparty."""
    __tablename__ = "vendors"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    address = db.Column(db.Text, nullable=True)
    tax_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "tax_id": self.tax_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
            **self.sync_dict(),
        }


class Customer(SyncTrackedMixin, db.Model):
    """Tenant-scoped billable party on invoices."""
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    address = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
            **self.sync_dict(),
        }


class Item(SyncTrackedMixin, db.Model):
    """
    Catalog line.

    unit_price is in the tenant's base currency. quantity is stock on hand
    and is a decimal (fractional units such as hours or kilograms).
    SKU is unique per tenant when present.
    """
    __tablename__ = "items"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "sku", name="uq_items_tenant_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True, index=True)
    description = db.Column(db.Text, nullable=True)
    unit_price = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)
    quantity = db.Column(db.Numeric(18, 4), nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "sku": self.sku,
            "description": self.description,
            "unit_price": format_amount(self.unit_price),
            "quantity": _amount(self.quantity),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
            **self.sync_dict(),
        }


class Package(db.Model):
    """
    Billing plan.

    name is the tier (Free/Basic/Pro/Enterprise). Entitlements are derived
    from the tier (see services/package_service.py) plus extra_features.
    """
    __tablename__ = "packages"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_packages_tenant_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(32), nullable=False)
    price = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)
    trial_price = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False)
    duration_days = db.Column(db.Integer, nullable=False)
    extra_features = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "price": format_amount(self.price, self.currency),
            "trial_price": format_amount(self.trial_price, self.currency),
            "currency": self.currency,
            "duration_days": self.duration_days,
            "extra_features": sorted(self.extra_features or []),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
