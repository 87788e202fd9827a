# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/billing/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Tenant management (MULTI-TENANT):
# - python -m flask tenants list [--all]
#   List tenants (--all includes soft-deleted ones).
# - python -m flask tenants create --name "Acme Corp" [--slug acme] [--email billing@acme.test] [--currency EUR]
#   Create a new tenant.
# - python -m flask tenants soft-delete --tenant-id 3 --yes
#   Soft-delete a tenant (sets deleted_at; rows are kept).
#
# Plans:
# - python -m flask packages seed --tenant-id 1
#   Create the Free / Basic / Pro / Enterprise plans a tenant is missing.
#
# Periodic jobs:
# - python -m flask subscriptions sweep [--now 2024-07-01T00:00:00Z]
#   Renew due auto-renew subscriptions, expire lapsed ones, activate finished trials.
# - python -m flask ledger verify [--tenant-id 1]
#   Check every invoice against the ledger invariants; exits 1 on violations.
# - python -m flask maintenance purge-sessions
#   Delete expired sessions.

import click
from flask.cli import with_appcontext

from .errors import BillingError
from .extensions import db
from .models import Invoice
from .money import format_amount
from .services import maintenance_service, package_service, subscription_service, tenant_service
from .services.invoice_service import verify_invoice_invariants
from .services.tenant_service import ActorContext
from .time_utils import parse_iso_datetime


@click.group('system')
def system_group():
    """System repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask tenants create' to add a tenant.")


# =============================================================================
# TENANTS
# =============================================================================

@click.group('tenants')
def tenants_group():
    """Tenant management commands."""


@tenants_group.command('list')
@click.option('--all', 'include_deleted', is_flag=True, help='Include soft-deleted tenants')
@with_appcontext
def list_tenants_cli(include_deleted):
    """List tenants."""
    tenants = tenant_service.list_tenants(include_deleted=include_deleted)

    if not tenants:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<30} {'Slug':<25} {'Deleted'}")
    click.echo("="*80)

    for tenant in tenants:
        deleted = tenant.deleted_at.isoformat() if tenant.deleted_at else "-"
        click.echo(f"{tenant.id:<5} {tenant.name:<30} {tenant.slug:<25} {deleted}")


@tenants_group.command('create')
@click.option('--name', required=True, help='Tenant name')
@click.option('--slug', default=None, help='URL slug (generated from the name when omitted)')
@click.option('--email', default='', help='Billing contact email')
@click.option('--currency', default=None, help='Catalog currency (ISO 4217)')
@click.option('--tax-rate', default=None, help='Flat tax rate, e.g. 0.08')
@with_appcontext
def create_tenant_cli(name, slug, email, currency, tax_rate):
    """Create a new tenant."""
    settings = {}
    if currency:
        settings["currency"] = currency.upper()
    if tax_rate is not None:
        settings["tax_rate"] = tax_rate

    try:
        tenant = tenant_service.create_tenant(name, email=email, slug=slug, settings=settings)
    except BillingError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    click.echo(f"PASS Created tenant '{tenant.name}' (ID: {tenant.id}, slug: {tenant.slug})")


@tenants_group.command('soft-delete')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def soft_delete_tenant_cli(tenant_id, yes):
    """Soft-delete a tenant."""
    if not yes:
        click.confirm(f"WARN Soft-delete tenant {tenant_id}?", abort=True)

    try:
        tenant = tenant_service.soft_delete_tenant(ActorContext.system(tenant_id), tenant_id)
    except BillingError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    click.echo(f"PASS Tenant {tenant.id} soft-deleted at {tenant.deleted_at.isoformat()}")


# =============================================================================
# PACKAGES
# =============================================================================

@click.group('packages')
def packages_group():
    """Billing plan commands."""


@packages_group.command('seed')
@click.option('--tenant-id', type=int, required=True, help='Tenant ID')
@with_appcontext
def seed_packages_cli(tenant_id):
    """Create the standard plans for a tenant."""
    try:
        created = package_service.seed_default_packages(ActorContext.system(tenant_id))
    except BillingError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    if not created:
        click.echo("SKIP All standard packages already exist.")
        return
    for package in created:
        price = format_amount(package.price, package.currency)
        click.echo(f"PASS {package.name:<12} {price} {package.currency} / {package.duration_days} days")


# =============================================================================
# PERIODIC JOBS
# =============================================================================

@click.group('subscriptions')
def subscriptions_group():
    """Subscription lifecycle jobs."""


@subscriptions_group.command('sweep')
@click.option('--now', 'now_iso', default=None, help='Evaluate at this ISO-8601 time instead of now')
@with_appcontext
def sweep_subscriptions_cli(now_iso):
    """
    Renew, expire and activate subscriptions.

    No payment gateway is wired into the CLI; renewals are recorded without
    a charge.
    """
    now = parse_iso_datetime(now_iso) if now_iso else None
    counts = subscription_service.sweep_subscriptions(now=now)

    click.echo("Subscription sweep results:")
    for key, value in counts.items():
        click.echo(f"  {key:<10} {value}")
    if counts.get("errors"):
        raise SystemExit(1)


@click.group('ledger')
def ledger_group():
    """Ledger consistency commands."""


@ledger_group.command('verify')
@click.option('--tenant-id', type=int, default=None, help='Only check this tenant')
@with_appcontext
def verify_ledger_cli(tenant_id):
    """Check every invoice against the ledger invariants."""
    query = db.session.query(Invoice)
    if tenant_id:
        query = query.filter_by(tenant_id=tenant_id)

    checked = 0
    failures = 0
    for invoice in query.order_by(Invoice.id).all():
        checked += 1
        problems = verify_invoice_invariants(invoice)
        if problems:
            failures += 1
            click.echo(f"FAIL tenant {invoice.tenant_id} invoice {invoice.invoice_number} (ID: {invoice.id})")
            for problem in problems:
                click.echo(f"     - {problem}")

    click.echo(f"Checked {checked} invoices, {failures} inconsistent.")
    if failures:
        raise SystemExit(1)


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('purge-sessions')
@with_appcontext
def purge_sessions_cli():
    """Delete sessions past their expiry."""
    deleted = maintenance_service.purge_expired_sessions()
    click.echo(f"Deleted {deleted} expired sessions.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tenants_group)  # Multi-tenant management
    app.cli.add_command(packages_group)
    app.cli.add_command(subscriptions_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(maintenance_group)
