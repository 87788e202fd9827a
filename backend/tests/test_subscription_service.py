# Overview: Pytest coverage for the subscription lifecycle and periodic sweep.

"""
Subscription Manager Tests

Time is always passed in explicitly (now=...) so every rule is checked at a
known instant relative to T0.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from billing.errors import (
    CrossTenantViolation,
    InvalidStateTransition,
    SubscriptionConflict,
    ValidationError,
)
from billing.extensions import db
from billing.models import AuditLog, PackageSubscription
from billing.services import package_service, subscription_service
from billing.services.subscription_service import evaluate_expiry

from conftest import T0


def _days(n):
    return T0 + timedelta(days=n)


class TestStartSubscription:

    def test_start_active(self, ctx_a, packages_a):
        pro = packages_a["Pro"]
        sub = subscription_service.start_subscription(ctx_a, pro.id, seats=5, now=T0)

        assert sub.status == "ACTIVE"
        assert sub.seats == 5
        assert sub.starts_at == T0
        assert sub.ends_at == _days(30)
        assert sub.trial_ends_at is None
        assert sub.package_name == "Pro"
        assert sub.package_price == Decimal("29.99")
        assert sub.meta == {"renewals": 0}

    def test_start_trial(self, ctx_a, packages_a):
        sub = subscription_service.start_subscription(ctx_a, packages_a["Basic"].id, trial_days=7, now=T0)
        assert sub.status == "TRIAL"
        assert sub.trial_ends_at == _days(7)

    def test_trial_longer_than_period_rejected(self, ctx_a, packages_a):
        with pytest.raises(ValidationError):
            subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, trial_days=31, now=T0)

    @pytest.mark.parametrize("seats", [0, -1, "3", True])
    def test_invalid_seats(self, ctx_a, packages_a, seats):
        with pytest.raises(ValidationError):
            subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, seats=seats, now=T0)

    def test_one_live_subscription_per_tenant(self, ctx_a, packages_a):
        subscription_service.start_subscription(ctx_a, packages_a["Basic"].id, now=T0)
        with pytest.raises(SubscriptionConflict):
            subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, now=_days(1))

        live = db.session.query(PackageSubscription).filter(
            PackageSubscription.status.in_(("TRIAL", "ACTIVE"))
        ).count()
        assert live == 1

    def test_replace_cancels_previous(self, ctx_a, packages_a):
        basic = subscription_service.start_subscription(ctx_a, packages_a["Basic"].id, now=T0)
        pro = subscription_service.start_subscription(
            ctx_a, packages_a["Pro"].id, replace=True, now=_days(10)
        )

        old = db.session.get(PackageSubscription, basic.id)
        assert old.status == "CANCELED"
        assert old.canceled_at == _days(10)
        assert old.replaced_by_id == pro.id
        assert pro.status == "ACTIVE"

    def test_lapsed_subscription_does_not_block(self, ctx_a, packages_a):
        """A subscription past ends_at is expired on the spot, not a conflict."""
        first = subscription_service.start_subscription(ctx_a, packages_a["Basic"].id, now=T0)
        second = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, now=_days(31))

        assert db.session.get(PackageSubscription, first.id).status == "EXPIRED"
        assert second.status == "ACTIVE"

    def test_inactive_package_rejected(self, ctx_a, packages_a):
        free = packages_a["Free"]
        free.is_active = False
        db.session.commit()
        with pytest.raises(InvalidStateTransition):
            subscription_service.start_subscription(ctx_a, free.id, now=T0)

    def test_foreign_package_rejected(self, ctx_b, packages_a):
        with pytest.raises(CrossTenantViolation):
            subscription_service.start_subscription(ctx_b, packages_a["Pro"].id, now=T0)


class TestExpiryAndRenewal:

    def test_expiry_without_auto_renew(self, ctx_a, packages_a):
        """Thirty-day plan started at T0 is EXPIRED at T0 + 31 days."""
        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, now=T0)
        assert evaluate_expiry(sub, _days(29)) == "ACTIVE"
        assert evaluate_expiry(sub, _days(31)) == "EXPIRED"

        sub = subscription_service.apply_expiry(ctx_a, sub.id, now=_days(31))
        assert sub.status == "EXPIRED"

    def test_renew_extends_from_previous_end(self, ctx_a, packages_a):
        """Auto-renew at T0 + 31 days moves ends_at to T0 + 60 days."""
        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, auto_renew=True, now=T0)

        renewed = subscription_service.renew(ctx_a, sub.id, now=_days(31))
        assert renewed.status == "ACTIVE"
        assert renewed.ends_at == _days(60)
        assert renewed.meta["renewals"] == 1
        assert renewed.amount_paid == Decimal("0")

    def test_renew_with_successful_charge(self, ctx_a, packages_a):
        charges = []

        def charge(subscription, amount):
            charges.append(amount)
            return True

        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, auto_renew=True, now=T0)
        renewed = subscription_service.renew(ctx_a, sub.id, now=_days(30), charge=charge)

        assert [str(c) for c in charges] == ["29.99 USD"]
        assert renewed.amount_paid == Decimal("29.99")
        assert renewed.ends_at == _days(60)

    def test_declined_charge_expires(self, ctx_a, packages_a):
        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, auto_renew=True, now=T0)
        result = subscription_service.renew(ctx_a, sub.id, now=_days(31), charge=lambda s, a: False)

        assert result.status == "EXPIRED"
        assert result.ends_at == _days(30)
        actions = [a.action for a in db.session.query(AuditLog).filter_by(entity_id=sub.id,
                                                                           entity_type="PackageSubscription")]
        assert "subscription.renewal_failed" in actions

    def test_renew_before_due_rejected(self, ctx_a, packages_a):
        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, auto_renew=True, now=T0)
        with pytest.raises(InvalidStateTransition):
            subscription_service.renew(ctx_a, sub.id, now=_days(10))

    def test_renew_without_auto_renew_rejected(self, ctx_a, packages_a):
        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, now=T0)
        with pytest.raises(InvalidStateTransition):
            subscription_service.renew(ctx_a, sub.id, now=_days(31))

    def test_trial_becomes_active(self, ctx_a, packages_a):
        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, trial_days=7, now=T0)
        assert evaluate_expiry(sub, _days(5)) == "TRIAL"
        assert subscription_service.apply_expiry(ctx_a, sub.id, now=_days(8)).status == "ACTIVE"

    def test_terminal_states_never_change(self, ctx_a, packages_a):
        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, now=T0)
        sub = subscription_service.cancel_subscription(ctx_a, sub.id, now=_days(2))
        assert sub.status == "CANCELED"
        assert evaluate_expiry(sub, _days(400)) == "CANCELED"

        with pytest.raises(InvalidStateTransition):
            subscription_service.cancel_subscription(ctx_a, sub.id, now=_days(3))
        with pytest.raises(InvalidStateTransition):
            subscription_service.renew(ctx_a, sub.id, now=_days(31))

    def test_current_subscription_ignores_lapsed(self, ctx_a, packages_a):
        sub = subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, now=T0)
        assert subscription_service.get_current_subscription(ctx_a, now=_days(1)).id == sub.id
        assert subscription_service.get_current_subscription(ctx_a, now=_days(31)) is None


class TestSweep:

    def test_sweep_renews_and_expires(self, ctx_a, ctx_b, packages_a):
        packages_b = {p.name: p for p in package_service.seed_default_packages(ctx_b)}
        renewing = subscription_service.start_subscription(
            ctx_a, packages_a["Pro"].id, auto_renew=True, now=T0
        )
        lapsing = subscription_service.start_subscription(ctx_b, packages_b["Basic"].id, now=T0)

        counts = subscription_service.sweep_subscriptions(now=_days(31))

        assert counts == {"TRIAL": 0, "ACTIVE": 1, "EXPIRED": 1, "renewed": 1, "errors": 0}
        assert db.session.get(PackageSubscription, renewing.id).ends_at == _days(60)
        assert db.session.get(PackageSubscription, lapsing.id).status == "EXPIRED"

    def test_sweep_is_idempotent_for_current(self, ctx_a, packages_a):
        subscription_service.start_subscription(ctx_a, packages_a["Pro"].id, trial_days=3, now=T0)
        first = subscription_service.sweep_subscriptions(now=_days(1))
        second = subscription_service.sweep_subscriptions(now=_days(1))
        assert first == second
        assert first["TRIAL"] == 1
