# Overview: Service-layer operations for package subscriptions; period and status lifecycle.

"""
Subscription Manager

STATE MACHINE:
    TRIAL --trial over--> ACTIVE --period over--> EXPIRED
    TRIAL | ACTIVE --cancel--> CANCELED

EXPIRED and CANCELED are terminal. A tenant holds at most one TRIAL/ACTIVE
subscription; start_subscription serializes on the tenant row (lock plus a
version bump) so two concurrent starts cannot both pass the check.

Time is always passed in (now=...) so the rules are deterministic; the
periodic sweep is an external job (flask subscriptions sweep) calling
sweep_subscriptions().
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from ..extensions import db
from ..errors import BillingError, InvalidStateTransition, SubscriptionConflict, ValidationError
from ..models import Package, PackageSubscription, Tenant
from ..models.subscriptions import (
    NON_TERMINAL_SUBSCRIPTION_STATUSES,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_TRIAL,
)
from billing.money import Money
from billing.time_utils import add_days, utcnow
from .audit_service import commit_with_audit, stage_audit
from .concurrency import lock_for_update, run_with_retry
from .tenant_service import ActorContext, require_active_tenant, require_tenant_entity, scoped_query


logger = logging.getLogger(__name__)

# Payment gateway collaborator: returns True when the renewal charge succeeded
ChargeFn = Callable[[PackageSubscription, Money], bool]


def _positive_int(value, field: str, *, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'non-negative' if allow_zero else 'positive'}")
    return value


def _lock_tenant(ctx: ActorContext, now: datetime) -> Tenant:
    tenant = lock_for_update(db.session.query(Tenant).filter_by(id=ctx.require_tenant())).first()
    # Dirtying the row bumps version_id; a concurrent writer fails at flush
    tenant.updated_at = now
    return tenant


def _non_terminal(tenant_id: int, *, lock: bool = False) -> list[PackageSubscription]:
    query = db.session.query(PackageSubscription).filter(
        PackageSubscription.tenant_id == tenant_id,
        PackageSubscription.status.in_(NON_TERMINAL_SUBSCRIPTION_STATUSES),
    )
    if lock:
        query = lock_for_update(query)
    return query.order_by(PackageSubscription.id).all()


# =============================================================================
# PURE RULES
# =============================================================================

def evaluate_expiry(subscription: PackageSubscription, now: datetime) -> str:
    """
    Status the subscription should have at `now`. Pure; writes nothing.

    - terminal statuses never change
    - past ends_at (and not renewed) -> EXPIRED
    - TRIAL past trial_ends_at, still within the period -> ACTIVE
    """
    if subscription.is_terminal:
        return subscription.status
    if now > subscription.ends_at:
        return SUBSCRIPTION_EXPIRED
    if (
        subscription.status == SUBSCRIPTION_TRIAL
        and subscription.trial_ends_at is not None
        and now > subscription.trial_ends_at
    ):
        return SUBSCRIPTION_ACTIVE
    return subscription.status


# =============================================================================
# LIFECYCLE
# =============================================================================

def start_subscription(
    ctx: ActorContext,
    package_id: int,
    seats: int = 1,
    trial_days: int | None = None,
    auto_renew: bool = False,
    replace: bool = False,
    now: datetime | None = None,
) -> PackageSubscription:
    """
    Subscribe the tenant to a package.

    Args:
        seats: Licensed seats (positive)
        trial_days: Trial length; TRIAL status when > 0. Cannot exceed the package duration.
        replace: Upgrade/downgrade flow. The current subscription is cancelled in
            the same transaction instead of raising SubscriptionConflict.

    Raises:
        ValidationError, SubscriptionConflict, InvalidStateTransition (deleted tenant)
    """
    seats = _positive_int(seats, "seats")
    if trial_days is not None:
        trial_days = _positive_int(trial_days, "trial_days", allow_zero=True)
    now = now or utcnow()

    def _op():
        require_active_tenant(ctx)
        package = require_tenant_entity(Package, package_id, ctx)
        if not package.is_active:
            raise InvalidStateTransition(f"Package {package.name} is not available", state=package.to_dict())
        if trial_days and trial_days > package.duration_days:
            raise ValidationError(
                f"trial_days ({trial_days}) cannot exceed the package duration ({package.duration_days})"
            )

        tenant = _lock_tenant(ctx, now)
        entries = []

        holders = []
        for current in _non_terminal(tenant.id, lock=True):
            status = evaluate_expiry(current, now)
            if status == SUBSCRIPTION_EXPIRED:
                current.status = SUBSCRIPTION_EXPIRED
                entries.append(stage_audit(ctx, "subscription.expired", entity=current))
            else:
                holders.append(current)

        if holders and not replace:
            raise SubscriptionConflict(
                "Tenant already has a non-terminal subscription; use replace=True to switch plans",
                state=holders[0].to_dict(),
            )

        on_trial = bool(trial_days)
        subscription = PackageSubscription(
            tenant_id=tenant.id,
            package=package,
            package_name=package.name,
            package_price=package.price,
            amount_paid=0,
            status=SUBSCRIPTION_TRIAL if on_trial else SUBSCRIPTION_ACTIVE,
            seats=seats,
            auto_renew=bool(auto_renew),
            starts_at=now,
            ends_at=add_days(now, package.duration_days),
            trial_ends_at=add_days(now, trial_days) if on_trial else None,
            meta={"renewals": 0},
        )
        db.session.add(subscription)
        db.session.flush()

        for old in holders:
            old.status = SUBSCRIPTION_CANCELED
            old.canceled_at = now
            old.replaced_by_id = subscription.id
            entries.append(stage_audit(ctx, "subscription.replaced", entity=old, meta={
                "replaced_by_id": subscription.id,
                "from_package": old.package_name,
                "to_package": package.name,
            }))

        entries.append(stage_audit(ctx, "subscription.started", entity=subscription, meta={
            "package": package.name,
            "status": subscription.status,
            "seats": seats,
            "ends_at": subscription.ends_at,
        }))
        commit_with_audit(entries)
        return subscription

    return run_with_retry(_op)


def renew(
    ctx: ActorContext,
    subscription_id: int,
    now: datetime | None = None,
    charge: ChargeFn | None = None,
) -> PackageSubscription:
    """
    Extend an auto-renewing subscription by one package period.

    The new period starts where the old one ended. A declined charge expires
    the subscription; there is no retry loop here.

    Raises:
        InvalidStateTransition: terminal, auto_renew off, or not yet due
    """
    now = now or utcnow()

    def _op():
        subscription = require_tenant_entity(PackageSubscription, subscription_id, ctx, lock=True)
        if subscription.is_terminal:
            raise InvalidStateTransition(
                f"Cannot renew a {subscription.status} subscription", state=subscription.to_dict()
            )
        if not subscription.auto_renew:
            raise InvalidStateTransition("Subscription is not set to auto-renew", state=subscription.to_dict())
        if now < subscription.ends_at:
            raise InvalidStateTransition("Subscription period has not ended yet", state=subscription.to_dict())

        package = subscription.package
        price = Money.of(package.price, package.currency)
        meta = dict(subscription.meta or {})

        if charge is not None and not charge(subscription, price):
            subscription.status = SUBSCRIPTION_EXPIRED
            meta["last_renewal_failed_at"] = now.isoformat()
            subscription.meta = meta
            logger.info("Renewal charge declined for subscription %s", subscription.id)
            commit_with_audit([stage_audit(ctx, "subscription.renewal_failed", entity=subscription,
                                           meta={"amount": price.amount})])
            return subscription

        previous_end = subscription.ends_at
        subscription.ends_at = add_days(previous_end, package.duration_days)
        subscription.status = SUBSCRIPTION_ACTIVE
        subscription.package_price = price.amount
        if charge is not None:
            subscription.amount_paid = (Money.of(subscription.amount_paid or 0, package.currency) + price).amount
        meta["renewals"] = int(meta.get("renewals", 0)) + 1
        meta["last_renewed_at"] = now.isoformat()
        subscription.meta = meta

        commit_with_audit([stage_audit(ctx, "subscription.renewed", entity=subscription, meta={
            "previous_ends_at": previous_end,
            "ends_at": subscription.ends_at,
            "charged": price.amount if charge is not None else None,
        })])
        return subscription

    # Never re-run a gateway charge
    return run_with_retry(_op, attempts=1 if charge is not None else None)


def apply_expiry(ctx: ActorContext, subscription_id: int, now: datetime | None = None) -> PackageSubscription:
    """Persist the outcome of evaluate_expiry()."""
    now = now or utcnow()

    def _op():
        subscription = require_tenant_entity(PackageSubscription, subscription_id, ctx, lock=True)
        status = evaluate_expiry(subscription, now)
        if status == subscription.status:
            db.session.rollback()
            return subscription

        previous = subscription.status
        subscription.status = status
        action = "subscription.expired" if status == SUBSCRIPTION_EXPIRED else "subscription.activated"
        commit_with_audit([stage_audit(ctx, action, entity=subscription, meta={"from_status": previous})])
        return subscription

    return run_with_retry(_op)


def cancel_subscription(ctx: ActorContext, subscription_id: int, now: datetime | None = None) -> PackageSubscription:
    """Cancel a TRIAL/ACTIVE subscription. ends_at is kept for reporting."""
    now = now or utcnow()

    def _op():
        subscription = require_tenant_entity(PackageSubscription, subscription_id, ctx, lock=True)
        if subscription.is_terminal:
            raise InvalidStateTransition(
                f"Subscription is already {subscription.status}", state=subscription.to_dict()
            )
        previous = subscription.status
        subscription.status = SUBSCRIPTION_CANCELED
        subscription.canceled_at = now
        commit_with_audit([stage_audit(ctx, "subscription.canceled", entity=subscription,
                                       meta={"from_status": previous})])
        return subscription

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_current_subscription(ctx: ActorContext, now: datetime | None = None) -> PackageSubscription | None:
    """
    The tenant's TRIAL/ACTIVE subscription, or None.

    A subscription whose period already ran out counts as none even before
    the sweep has marked it EXPIRED.
    """
    now = now or utcnow()
    for subscription in _non_terminal(ctx.require_tenant()):
        if evaluate_expiry(subscription, now) != SUBSCRIPTION_EXPIRED:
            return subscription
    return None


def list_subscriptions(ctx: ActorContext) -> list[PackageSubscription]:
    return scoped_query(PackageSubscription, ctx).order_by(PackageSubscription.id.desc()).all()


def get_subscription(ctx: ActorContext, subscription_id: int) -> PackageSubscription:
    return require_tenant_entity(PackageSubscription, subscription_id, ctx)


# =============================================================================
# PERIODIC SWEEP
# =============================================================================

def sweep_subscriptions(now: datetime | None = None, charge: ChargeFn | None = None) -> dict[str, int]:
    """
    Renew due auto-renew subscriptions and expire or activate the rest.

    Returns counts of resulting statuses, plus "renewed" and "errors".
    A failure on one subscription is logged and does not stop the sweep.
    """
    now = now or utcnow()
    counts = {
        SUBSCRIPTION_TRIAL: 0,
        SUBSCRIPTION_ACTIVE: 0,
        SUBSCRIPTION_EXPIRED: 0,
        "renewed": 0,
        "errors": 0,
    }

    candidates = (
        db.session.query(PackageSubscription.id, PackageSubscription.tenant_id)
        .filter(PackageSubscription.status.in_(NON_TERMINAL_SUBSCRIPTION_STATUSES))
        .order_by(PackageSubscription.id)
        .all()
    )

    for subscription_id, tenant_id in candidates:
        ctx = ActorContext.system(tenant_id)
        try:
            subscription = get_subscription(ctx, subscription_id)
            if subscription.auto_renew and now >= subscription.ends_at and not subscription.is_terminal:
                subscription = renew(ctx, subscription_id, now=now, charge=charge)
                if subscription.status == SUBSCRIPTION_ACTIVE:
                    counts["renewed"] += 1
            else:
                subscription = apply_expiry(ctx, subscription_id, now=now)
        except BillingError:
            db.session.rollback()
            counts["errors"] += 1
            logger.exception("Subscription sweep failed for subscription %s", subscription_id)
            continue

        if subscription.status in counts:
            counts[subscription.status] += 1

    logger.info("Subscription sweep at %s: %s", now.isoformat(), counts)
    return counts
