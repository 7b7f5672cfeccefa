"""
CLI Commands for loyalty maintenance.

These commands run the same jobs as the background scheduler and can be
run manually or via cron:

# Push pending reward discounts to Square (every minute)
* * * * * cd /app && flask loyalty drain-outbox

# Rolling window and earned reward expiry (daily at 3 AM)
0 3 * * * cd /app && flask loyalty expire-windows
5 3 * * * cd /app && flask loyalty expire-rewards
"""

import click
from flask.cli import with_appcontext
from ..extensions import db
from ..models.tenant import Tenant
from ..services.discount_outbox import DiscountOutbox
from ..services.expiration_service import ExpirationService
from ..services.summary_service import SummaryService


@click.group('loyalty')
def loyalty_cli():
    """Frequent-buyer loyalty commands."""
    pass


def _tenants(tenant_id):
    if tenant_id:
        tenant = db.session.get(Tenant, tenant_id)
        if not tenant:
            click.echo(f"Tenant {tenant_id} not found")
            return []
        return [tenant]
    return Tenant.query.filter_by(is_active=True).all()


@loyalty_cli.command('drain-outbox')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@click.option('--limit', type=int, help='Max tasks to process')
@with_appcontext
def drain_outbox(tenant_id, limit):
    """
    Process pending reward discount tasks.
    """
    stats = DiscountOutbox(tenant_id).drain(limit=limit)

    click.echo(f"Processed: {stats['processed']} tasks")
    click.echo(f"  Completed: {stats['completed']}")
    click.echo(f"  Skipped: {stats['skipped']}")
    click.echo(f"  Retrying: {stats['retrying']}")
    click.echo(f"  Failed: {stats['failed']}")


@loyalty_cli.command('expire-windows')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def expire_windows(tenant_id):
    """
    Recompute progress for purchases that left their rolling window.

    Run this daily.
    """
    total = 0
    for tenant in _tenants(tenant_id):
        click.echo(f"\nProcessing tenant: {tenant.slug}")
        result = ExpirationService(tenant.id).process_expired_window_entries()

        click.echo(f"  Pairs recomputed: {result['processed']}")
        if result['errors']:
            click.echo(f"  Errors: {len(result['errors'])}")
            for error in result['errors'][:5]:
                click.echo(f"    - Customer {error['customer_id']} offer {error['offer_id']}: {error['error']}")

        total += result['processed']

    click.echo(f"\nTOTAL: {total} pairs")


@loyalty_cli.command('expire-rewards')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def expire_rewards(tenant_id):
    """
    Revoke earned rewards whose locked purchases have all expired.

    Run this daily.
    """
    total = 0
    for tenant in _tenants(tenant_id):
        click.echo(f"\nProcessing tenant: {tenant.slug}")
        result = ExpirationService(tenant.id).process_expired_earned_rewards()

        click.echo(f"  Revoked: {result['processed']} rewards")
        if result['errors']:
            click.echo(f"  Errors: {len(result['errors'])}")
            for error in result['errors'][:5]:
                click.echo(f"    - Reward {error['reward_id']}: {error['error']}")

        total += result['processed']

    click.echo(f"\nTOTAL: {total} rewards revoked")


@loyalty_cli.command('rebuild-summaries')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def rebuild_summaries(tenant_id):
    """
    Rebuild customer summaries from the purchase ledger.
    """
    for tenant in _tenants(tenant_id):
        try:
            count = SummaryService(tenant.id).rebuild_all()
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            click.echo(f"Tenant {tenant.slug}: rebuild failed: {e}")
            continue
        click.echo(f"Tenant {tenant.slug}: rebuilt {count} summaries")


def init_app(app):
    """Register CLI commands with the Flask app."""
    app.cli.add_command(loyalty_cli)
