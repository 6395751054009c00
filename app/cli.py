"""Scheduled jobs, run from cron as ``flask <command>``."""
from datetime import timedelta
import logging

import click
from flask import current_app

from app.services.fulfillment import get_services

logger = logging.getLogger(__name__)


def register_commands(app):

    @app.cli.command('settle-balances')
    def settle_balances():
        """Release settlements whose hold period has elapsed."""
        released = get_services().ledger.release_matured()
        click.echo(f'Released {released} settlements')

    @app.cli.command('promote-deliveries')
    @click.option(
        '--grace-days',
        type=int,
        default=None,
        help='Days after pickup before a shipment counts as delivered.')
    def promote_deliveries(grace_days):
        """Mark long-shipped orders delivered."""
        if grace_days is None:
            grace_days = current_app.config.get('DELIVERY_GRACE_DAYS')
        if grace_days is None:
            raise click.UsageError(
                'No grace period configured; set DELIVERY_GRACE_DAYS '
                'or pass --grace-days')
        if grace_days < 0:
            raise click.BadParameter(
                'must not be negative', param_hint='--grace-days')
        promoted = get_services().shipping.promote_overdue(
            timedelta(days=grace_days))
        click.echo(f'Promoted {promoted} shipments to delivered')

    @app.cli.command('dispatch-outbox')
    @click.option('--limit', type=int, default=100)
    def dispatch_outbox(limit):
        """Deliver queued refunds and other outbound actions."""
        sent, failed = get_services().outbox.dispatch_due(limit=limit)
        if failed:
            logger.warning("Outbox run left %s actions failing", failed)
        click.echo(f'Sent {sent}, failed {failed}')
