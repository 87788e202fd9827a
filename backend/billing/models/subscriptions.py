from __future__ import annotations

from ..extensions import db
from billing.money import MONEY_PRECISION, MONEY_SCALE, format_amount
from billing.time_utils import to_utc_z


SUBSCRIPTION_TRIAL = "TRIAL"
SUBSCRIPTION_ACTIVE = "ACTIVE"
SUBSCRIPTION_EXPIRED = "EXPIRED"
SUBSCRIPTION_CANCELED = "CANCELED"

NON_TERMINAL_SUBSCRIPTION_STATUSES = (SUBSCRIPTION_TRIAL, SUBSCRIPTION_ACTIVE)
TERMINAL_SUBSCRIPTION_STATUSES = (SUBSCRIPTION_EXPIRED, SUBSCRIPTION_CANCELED)


class PackageSubscription(db.Model):
    """
    Binds a tenant to a package for [starts_at, ends_at].

    STATE MACHINE: TRIAL -> ACTIVE -> EXPIRED; CANCELED from TRIAL/ACTIVE.
    INVARIANTS: ends_at > starts_at; trial_ends_at <= ends_at when set;
    at most one TRIAL/ACTIVE subscription per tenant.

    package_name / package_price are snapshots taken at start or renewal.
    """
    __tablename__ = "package_subscriptions"
    __table_args__ = (
        db.Index("ix_package_subscriptions_tenant_status", "tenant_id", "status"),
        db.CheckConstraint("ends_at > starts_at", name="ck_subscription_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=False, index=True)

    package_name = db.Column(db.String(32), nullable=False)
    package_price = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)
    amount_paid = db.Column(db.Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=SUBSCRIPTION_TRIAL, index=True)
    seats = db.Column(db.Integer, nullable=False, default=1)
    auto_renew = db.Column(db.Boolean, nullable=False, default=False)

    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    trial_ends_at = db.Column(db.DateTime, nullable=True)
    canceled_at = db.Column(db.DateTime, nullable=True)
    replaced_by_id = db.Column(db.Integer, db.ForeignKey("package_subscriptions.id"), nullable=True)

    # "metadata" is reserved on declarative classes
    meta = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    package = db.relationship("Package")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBSCRIPTION_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "package_id": self.package_id,
            "package_name": self.package_name,
            "package_price": format_amount(self.package_price, self.package.currency),
            "amount_paid": format_amount(self.amount_paid, self.package.currency),
            "status": self.status,
            "seats": self.seats,
            "auto_renew": self.auto_renew,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "trial_ends_at": to_utc_z(self.trial_ends_at),
            "canceled_at": to_utc_z(self.canceled_at),
            "replaced_by_id": self.replaced_by_id,
            "metadata": self.meta or {},
            "version_id": self.version_id,
        }
