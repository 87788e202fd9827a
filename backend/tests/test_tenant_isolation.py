# Overview: Pytest coverage for tenant isolation behavior.

"""
Multi-Tenant Isolation Tests

SECURITY TESTS: Prove that cross-tenant access is denied for core resources.

These tests create two tenants with their own customers and items, then
verify that:
1. A caller in tenant A cannot read or write records of tenant B
2. Combining records from two tenants in one write is rejected
3. A rejected write leaves nothing behind (no invoice, no stock change)
4. Scoped queries only ever return the caller's rows
"""

from decimal import Decimal

import pytest
from billing.errors import CrossTenantViolation, InvalidStateTransition, NotFoundError
from billing.extensions import db
from billing.models import Customer, Invoice, Item
from billing.services import catalog_service, invoice_service, payment_service
from billing.services.tenant_service import (
    ActorContext,
    assert_same_tenant,
    require_tenant_entity,
    scoped_query,
    soft_delete_tenant,
)

from conftest import make_invoice


class TestTenantServiceHelpers:
    """Test tenant_service guard functions."""

    def test_require_tenant_entity_own_record(self, ctx_a, customer_a):
        """Record in the caller's tenant passes."""
        result = require_tenant_entity(Customer, customer_a.id, ctx_a)
        assert result.id == customer_a.id

    def test_require_tenant_entity_cross_tenant(self, ctx_a, customer_b):
        """Record of another tenant raises CrossTenantViolation."""
        with pytest.raises(CrossTenantViolation):
            require_tenant_entity(Customer, customer_b.id, ctx_a)

    def test_require_tenant_entity_missing(self, ctx_a):
        with pytest.raises(NotFoundError):
            require_tenant_entity(Customer, 99999, ctx_a)

    def test_missing_tenant_context(self, customer_a):
        """A context without tenant scope is never trusted."""
        with pytest.raises(CrossTenantViolation):
            require_tenant_entity(Customer, customer_a.id, ActorContext(tenant_id=None))

    def test_assert_same_tenant(self, ctx_a, customer_a, consulting_a, widget_b):
        assert assert_same_tenant(ctx_a, customer_a, consulting_a) == ctx_a.tenant_id
        with pytest.raises(CrossTenantViolation):
            assert_same_tenant(customer_a, widget_b)

    def test_assert_same_tenant_rejects_unscoped(self, customer_a):
        with pytest.raises(CrossTenantViolation):
            assert_same_tenant(customer_a, None)

    def test_scoped_query_filters(self, ctx_a, ctx_b, customer_a, customer_b):
        ids_a = {c.id for c in scoped_query(Customer, ctx_a).all()}
        ids_b = {c.id for c in scoped_query(Customer, ctx_b).all()}
        assert ids_a == {customer_a.id}
        assert ids_b == {customer_b.id}


class TestCrossTenantWrites:
    """Ledger writes never mix tenants."""

    def test_invoice_with_foreign_item_rejected(self, ctx_a, customer_a, widget_b):
        """Tenant A invoicing tenant B's item changes nothing."""
        with pytest.raises(CrossTenantViolation):
            make_invoice(ctx_a, customer_a, widget_b, quantity="1")

        assert db.session.query(Invoice).count() == 0
        item = db.session.get(Item, widget_b.id)
        assert item.quantity == Decimal("10")

    def test_invoice_for_foreign_customer_rejected(self, ctx_a, customer_b, consulting_a):
        with pytest.raises(CrossTenantViolation):
            make_invoice(ctx_a, customer_b, consulting_a)
        assert db.session.query(Invoice).count() == 0

    def test_read_foreign_invoice_rejected(self, ctx_a, ctx_b, customer_b, widget_b):
        invoice = make_invoice(ctx_b, customer_b, widget_b, quantity="1")
        with pytest.raises(CrossTenantViolation):
            invoice_service.get_invoice(ctx_a, invoice.id)

    def test_pay_foreign_invoice_rejected(self, ctx_a, ctx_b, customer_b, widget_b):
        invoice = make_invoice(ctx_b, customer_b, widget_b, quantity="1")
        with pytest.raises(CrossTenantViolation):
            payment_service.record_payment(ctx_a, invoice.id, "5.00", "CASH")

        refreshed = db.session.get(Invoice, invoice.id)
        assert refreshed.amount_paid == Decimal("0")
        assert refreshed.status == "DRAFT"

    def test_update_foreign_item_rejected(self, ctx_a, widget_b):
        with pytest.raises(CrossTenantViolation):
            catalog_service.update_item(ctx_a, widget_b.id, unit_price="1.00")
        assert db.session.get(Item, widget_b.id).unit_price == Decimal("20.00")

    def test_listing_never_leaks(self, ctx_a, ctx_b, customer_b, widget_b):
        make_invoice(ctx_b, customer_b, widget_b, quantity="1")
        invoices, count = invoice_service.list_invoices(ctx_a)
        assert invoices == []
        assert count == 0
        assert catalog_service.list_items(ctx_a) == []


class TestTenantLifecycle:

    def test_deleted_tenant_rejects_writes(self, ctx_a, tenant_a):
        """Soft-deleted tenants keep their rows but accept no new writes."""
        soft_delete_tenant(ctx_a, tenant_a.id)
        assert tenant_a.deleted_at is not None

        with pytest.raises(InvalidStateTransition):
            catalog_service.create_customer(ctx_a, "Late Customer")

    def test_admin_cannot_delete_other_tenant(self, ctx_a, tenant_b):
        with pytest.raises(CrossTenantViolation):
            soft_delete_tenant(ctx_a, tenant_b.id)
