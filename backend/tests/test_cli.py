# Overview: Pytest coverage for the Flask CLI command groups.

from datetime import timedelta

from billing.extensions import db
from billing.models import Package, Session, Tenant
from billing.services import subscription_service, tenant_service
from billing.time_utils import utcnow

from conftest import T0, make_invoice


class TestTenantCommands:

    def test_create_and_list(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["tenants", "create", "--name", "Globex", "--currency", "eur",
                                     "--tax-rate", "0.2"])
        assert result.exit_code == 0
        assert "PASS Created tenant 'Globex'" in result.output

        tenant = db.session.query(Tenant).filter_by(slug="globex").one()
        assert tenant.settings == {"currency": "EUR", "tax_rate": "0.2"}

        listing = runner.invoke(args=["tenants", "list"])
        assert "globex" in listing.output

    def test_duplicate_slug_fails(self, app, tenant_a):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["tenants", "create", "--name", "Other", "--slug", tenant_a.slug])
        assert result.exit_code == 1
        assert "FAIL" in result.output

    def test_soft_delete(self, app, tenant_b):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["tenants", "soft-delete", "--tenant-id", str(tenant_b.id), "--yes"])
        assert result.exit_code == 0

        listing = runner.invoke(args=["tenants", "list"])
        assert tenant_b.slug not in listing.output
        listing_all = runner.invoke(args=["tenants", "list", "--all"])
        assert tenant_b.slug in listing_all.output


class TestJobCommands:

    def test_seed_packages(self, app, tenant_a):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["packages", "seed", "--tenant-id", str(tenant_a.id)])
        assert result.exit_code == 0
        assert db.session.query(Package).filter_by(tenant_id=tenant_a.id).count() == 4

        again = runner.invoke(args=["packages", "seed", "--tenant-id", str(tenant_a.id)])
        assert "SKIP" in again.output

    def test_sweep(self, app, ctx_a, packages_a):
        subscription_service.start_subscription(ctx_a, packages_a["Basic"].id, now=T0)
        runner = app.test_cli_runner()

        result = runner.invoke(args=["subscriptions", "sweep", "--now", "2024-03-01T00:00:00Z"])
        assert result.exit_code == 0
        assert "EXPIRED    1" in result.output

    def test_ledger_verify(self, app, ctx_a, customer_a, consulting_a):
        make_invoice(ctx_a, customer_a, consulting_a)
        runner = app.test_cli_runner()

        result = runner.invoke(args=["ledger", "verify", "--tenant-id", str(ctx_a.tenant_id)])
        assert result.exit_code == 0
        assert "Checked 1 invoices, 0 inconsistent." in result.output

    def test_purge_sessions(self, app, tenant_a):
        user = tenant_service.create_user(tenant_a.id, "Ann", "ann@acme.test")
        db.session.add_all([
            Session(user_id=user.id, tenant_id=tenant_a.id, session_token="old",
                    expires=utcnow() - timedelta(hours=1)),
            Session(user_id=user.id, tenant_id=tenant_a.id, session_token="live",
                    expires=utcnow() + timedelta(hours=1)),
        ])
        db.session.commit()

        result = app.test_cli_runner().invoke(args=["maintenance", "purge-sessions"])
        assert "Deleted 1 expired sessions." in result.output
        assert [s.session_token for s in db.session.query(Session).all()] == ["live"]
