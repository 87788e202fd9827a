# Overview: Service-layer operations for billing plans and their entitlements.

"""
Packages and entitlements

A package's capabilities come from its tier. Tiers are cumulative
(Free < Basic < Pro < Enterprise): a higher tier holds every capability of
the tiers below it. A package may add extra_features on top of its tier.

USAGE:
    if not tenant_has_capability(ctx, "Multi_Currency_Support"):
        raise ValidationError("Upgrade required")
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import DuplicateEntityError, ValidationError
from ..models import Package
from billing.money import Money, MoneyOverflowError
from .audit_service import commit_with_audit, stage_audit
from .catalog_service import tenant_currency
from .tenant_service import ActorContext, require_active_tenant, require_tenant_entity, scoped_query


TIER_FREE = "Free"
TIER_BASIC = "Basic"
TIER_PRO = "Pro"
TIER_ENTERPRISE = "Enterprise"
TIERS = (TIER_FREE, TIER_BASIC, TIER_PRO, TIER_ENTERPRISE)

_TIER_FEATURES = {
    TIER_FREE: (
        "Invoicing", "Customer_Management", "Vendor_Management",
        "Notifications_and_Reminders", "Mobile_Access", "Free_Trials",
        "Money_Back_Guarantees",
    ),
    TIER_BASIC: (
        "Inventory_Management", "Payment_Tracking", "Tax_Management",
        "Reporting_and_Analytics", "Expense_Tracking", "Purchase_Orders",
        "User_Roles_and_Permissions", "Data_Import_and_Export", "Community_Access",
    ),
    TIER_PRO: (
        "Multi_Currency_Support", "Recurring_Invoices", "Project_Management",
        "Time_Tracking", "Integrations", "Custom_Branding", "API_Access",
        "Dashboards", "Custom_Reports", "Barcoding", "Warehouse_Management",
        "Shipping_Integration", "E_Commerce_Integration", "CRM_Integration",
        "Budgeting", "Forecasting",
    ),
    TIER_ENTERPRISE: (
        "Role_Based_Access_Control", "Single_Sign_On", "Two_Factor_Authentication",
        "Data_Encryption", "Audit_Trails", "Cloud_Backups", "Multi_Language_Support",
        "Document_Storage", "Compliance_Features", "Advanced_Security_Features",
        "Dedicated_Account_Manager", "Service_Level_Agreements", "Priority_Support",
        "White_Labeling", "Custom_Workflows", "Approval_Processes",
        "Data_Migration_Support", "Performance_Guarantees", "Uptime_Guarantees",
    ),
}


def _cumulative() -> dict[str, frozenset[str]]:
    result = {}
    acquired: set[str] = set()
    for tier in TIERS:
        acquired |= set(_TIER_FEATURES[tier])
        result[tier] = frozenset(acquired)
    return result


TIER_CAPABILITIES = _cumulative()
ALL_FEATURES = TIER_CAPABILITIES[TIER_ENTERPRISE]

DEFAULT_PACKAGES = (
    # (tier, price, duration_days)
    (TIER_FREE, "0.00", 30),
    (TIER_BASIC, "9.99", 30),
    (TIER_PRO, "29.99", 30),
    (TIER_ENTERPRISE, "99.99", 365),
)


def capabilities_for(package: Package) -> frozenset[str]:
    base = TIER_CAPABILITIES.get(package.name, frozenset())
    return base | frozenset(package.extra_features or ())


def _validate_features(features) -> list[str]:
    features = sorted(set(features or ()))
    unknown = [f for f in features if f not in ALL_FEATURES]
    if unknown:
        raise ValidationError(f"Unknown features: {unknown}")
    return features


def create_package(
    ctx: ActorContext,
    name: str,
    price,
    duration_days: int,
    *,
    trial_price="0",
    currency: str | None = None,
    extra_features=None,
) -> Package:
    """
    Create a billing plan for the tenant.

    Raises:
        ValidationError: unknown tier, negative price, non-positive duration
        DuplicateEntityError: the tenant already has a package of that tier
    """
    tenant = require_active_tenant(ctx)
    if name not in TIERS:
        raise ValidationError(f"Invalid package name: {name}. Must be one of {list(TIERS)}")
    if not isinstance(duration_days, int) or isinstance(duration_days, bool) or duration_days <= 0:
        raise ValidationError("duration_days must be a positive integer")

    currency = (currency or tenant_currency(tenant)).upper()
    try:
        price_money = Money.of(price, currency)
        trial_money = Money.of(trial_price, currency)
    except (TypeError, ValueError, MoneyOverflowError) as exc:
        raise ValidationError(str(exc))
    if price_money.is_negative() or trial_money.is_negative():
        raise ValidationError("Package prices cannot be negative")

    if scoped_query(Package, ctx).filter(Package.name == name).first():
        raise DuplicateEntityError(f"Package '{name}' already exists in this tenant")

    package = Package(
        tenant_id=ctx.tenant_id,
        name=name,
        price=price_money.amount,
        trial_price=trial_money.amount,
        currency=currency,
        duration_days=duration_days,
        extra_features=_validate_features(extra_features),
        is_active=True,
    )
    db.session.add(package)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateEntityError(f"Package '{name}' already exists in this tenant")

    commit_with_audit([stage_audit(ctx, "package.created", entity=package,
                                   meta={"name": name, "price": price_money.amount})])
    return package


def get_package(ctx: ActorContext, package_id: int) -> Package:
    return require_tenant_entity(Package, package_id, ctx)


def list_packages(ctx: ActorContext, include_inactive: bool = False) -> list[Package]:
    query = scoped_query(Package, ctx)
    if not include_inactive:
        query = query.filter(Package.is_active.is_(True))
    packages = query.all()
    return sorted(packages, key=lambda p: TIERS.index(p.name) if p.name in TIERS else len(TIERS))


def seed_default_packages(ctx: ActorContext) -> list[Package]:
    """Create any of the four standard plans the tenant does not have yet."""
    existing = {p.name for p in scoped_query(Package, ctx).all()}
    created = []
    for tier, price, days in DEFAULT_PACKAGES:
        if tier in existing:
            continue
        created.append(create_package(ctx, tier, price, days))
    return created


def tenant_has_capability(ctx: ActorContext, feature: str) -> bool:
    """True when the tenant's current non-terminal subscription grants `feature`."""
    from .subscription_service import get_current_subscription

    subscription = get_current_subscription(ctx)
    if subscription is None:
        return False
    return feature in capabilities_for(subscription.package)
