# Overview: Pytest coverage for the append-only audit trail.

"""
Audit Recorder Tests

- State-changing ledger operations leave one entry each, attributed to the actor
- Entries cannot be updated or deleted through the ORM
- Best-effort mode keeps the primary write when the audit write fails
- Strict mode writes nothing when the audit entry cannot be written
"""

import pytest
from sqlalchemy.exc import IntegrityError

from billing.extensions import db
from billing.models import AuditLog, Customer
from billing.models.audit import AuditLogImmutableError
from billing.services import payment_service
from billing.services.audit_service import (
    audit_failure_count,
    commit_with_audit,
    list_audit_entries,
    record_audit,
    stage_audit,
)

from conftest import make_invoice


class TestAuditEntries:

    def test_ledger_operations_are_audited(self, ctx_a, customer_a, consulting_a):
        invoice = make_invoice(ctx_a, customer_a, consulting_a)
        payment = payment_service.record_payment(ctx_a, invoice.id, "10.00", "CASH", "r-1")
        payment_service.void_payment(ctx_a, payment.id, reason="typo")

        actions = [e.action for e in list_audit_entries(ctx_a)]
        assert actions[:3] == ["payment.voided", "payment.recorded", "invoice.created"]

        voided = list_audit_entries(ctx_a, action="payment.voided")[0]
        assert voided.actor == "Admin:1"
        assert voided.user_id == 1
        assert voided.ip_address == "10.0.0.1"
        assert voided.entity_type == "Payment"
        assert voided.entity_id == payment.id
        assert voided.meta["reason"] == "typo"
        assert voided.meta["amount"] == "10.00"

    def test_entries_are_tenant_scoped(self, ctx_a, ctx_b, customer_a, customer_b):
        assert all(e.tenant_id == ctx_a.tenant_id for e in list_audit_entries(ctx_a))
        assert any(e.entity_id == customer_b.id for e in list_audit_entries(ctx_b))
        assert not any(
            e.entity_type == "Customer" and e.entity_id == customer_b.id
            for e in list_audit_entries(ctx_a)
        )


class TestImmutability:

    def test_update_rejected(self, ctx_a, customer_a):
        entry = list_audit_entries(ctx_a)[0]
        entry.action = "tampered"
        with pytest.raises(AuditLogImmutableError):
            db.session.flush()
        db.session.rollback()

    def test_delete_rejected(self, ctx_a, customer_a):
        entry = list_audit_entries(ctx_a)[0]
        db.session.delete(entry)
        with pytest.raises(AuditLogImmutableError):
            db.session.flush()
        db.session.rollback()


class TestAuditModes:

    def test_best_effort_keeps_primary_write(self, ctx_a, tenant_a):
        customer = Customer(tenant_id=tenant_a.id, name="Kept")
        db.session.add(customer)
        broken = stage_audit(ctx_a, "customer.created", entity_type="Customer")
        broken.actor = None

        commit_with_audit([broken])

        assert audit_failure_count() == 1
        assert db.session.query(Customer).filter_by(name="Kept").count() == 1

    def test_strict_mode_is_all_or_nothing(self, ctx_a, tenant_a, billing_config):
        billing_config(BILLING_AUDIT_STRICT=True)
        customer = Customer(tenant_id=tenant_a.id, name="Dropped")
        db.session.add(customer)
        broken = stage_audit(ctx_a, "customer.created", entity_type="Customer")
        broken.actor = None

        with pytest.raises(IntegrityError):
            commit_with_audit([broken])
        db.session.rollback()

        assert audit_failure_count() == 0
        assert db.session.query(Customer).filter_by(name="Dropped").count() == 0

    def test_strict_mode_success(self, ctx_a, billing_config):
        billing_config(BILLING_AUDIT_STRICT=True)
        record_audit(ctx_a, "tenant.settings_viewed", meta={"keys": ("currency",)})
        entry = list_audit_entries(ctx_a, action="tenant.settings_viewed")[0]
        assert entry.meta == {"keys": ["currency"]}
