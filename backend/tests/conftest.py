"""
Pytest fixtures for billing engine tests.

Provides test database setup, two tenants for isolation tests, catalog
records and a test client.
"""

from datetime import datetime

import pytest
from billing import create_app
from billing.extensions import db
from billing.models.tenancy import ROLE_ADMIN
from billing.services import catalog_service, package_service, tenant_service
from billing.services.audit_service import reset_audit_failure_count
from billing.services.tenant_service import ActorContext


T0 = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BILLING_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        reset_audit_failure_count()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def billing_config(app):
    """Temporarily override billing config keys; restored after the test."""
    saved = {}

    def _set(**values):
        for key, value in values.items():
            saved.setdefault(key, app.config.get(key))
            app.config[key] = value

    yield _set

    app.config.update(saved)


@pytest.fixture(scope='function')
def tenant_a(db_session):
    """Tenant A (first tenant): USD catalog, 8% flat tax."""
    return tenant_service.create_tenant(
        "Tenant A - Acme Corp", email="billing@acme.test",
        settings={"currency": "USD", "tax_rate": "0.08"},
    )


@pytest.fixture(scope='function')
def tenant_b(db_session):
    """Tenant B (second tenant): no tax."""
    return tenant_service.create_tenant(
        "Tenant B - Beta Inc", email="billing@beta.test",
        settings={"currency": "USD", "tax_rate": "0"},
    )


@pytest.fixture(scope='function')
def ctx_a(tenant_a):
    return ActorContext(tenant_id=tenant_a.id, user_id=1, role=ROLE_ADMIN, ip_address="10.0.0.1")


@pytest.fixture(scope='function')
def user_ctx_a(tenant_a):
    """Non-admin caller in tenant A."""
    return ActorContext(tenant_id=tenant_a.id, user_id=2)


@pytest.fixture(scope='function')
def ctx_b(tenant_b):
    return ActorContext(tenant_id=tenant_b.id, user_id=3, role=ROLE_ADMIN)


@pytest.fixture(scope='function')
def customer_a(ctx_a):
    return catalog_service.create_customer(ctx_a, "Customer A", email="ap@customer-a.test")


@pytest.fixture(scope='function')
def customer_b(ctx_b):
    return catalog_service.create_customer(ctx_b, "Customer B")


@pytest.fixture(scope='function')
def consulting_a(ctx_a):
    """Item in tenant A priced 50.00 with 100 units of stock."""
    return catalog_service.create_item(ctx_a, "Consulting hour", "50.00", sku="cons-1", quantity="100")


@pytest.fixture(scope='function')
def widget_b(ctx_b):
    return catalog_service.create_item(ctx_b, "Widget", "20.00", sku="WID-1", quantity="10")


@pytest.fixture(scope='function')
def packages_a(ctx_a):
    """Standard plans for tenant A, keyed by tier."""
    return {p.name: p for p in package_service.seed_default_packages(ctx_a)}


def make_invoice(ctx, customer, item, quantity="2", **kwargs):
    """Helper: DRAFT invoice with one line."""
    from billing.services import invoice_service

    return invoice_service.create_invoice(
        ctx, customer.id, [{"item_id": item.id, "quantity": quantity}], **kwargs
    )


def headers_for(ctx) -> dict:
    """Helper: trusted auth-proxy headers for a context."""
    headers = {"X-Tenant-Id": str(ctx.tenant_id), "X-User-Role": ctx.role}
    if ctx.user_id is not None:
        headers["X-User-Id"] = str(ctx.user_id)
    return headers
