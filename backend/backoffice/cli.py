# Overview: Flask CLI command groups for bootstrap and ledger maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger maintenance:
# - python -m flask ledger recalculate [--accounts-only | --stock-only]
#   Rebuild current balances and warehouse stock from the event ledgers.
# - python -m flask ledger check-consistency [--material-id 5]
#   Report materialized rows that differ from their ledger without writing.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import recalculation_service
from .services.recalculation_service import RecalculationPartialFailureError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables ensured.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the ledgers!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('ledger')
def ledger_group():
    """Balance and stock projection maintenance."""


@ledger_group.command('recalculate')
@click.option('--accounts-only', is_flag=True, help='Only rebuild account balances')
@click.option('--stock-only', is_flag=True, help='Only rebuild warehouse stock')
@with_appcontext
def recalculate(accounts_only, stock_only):
    """Rebuild every materialized balance and stock row from the event ledgers."""
    if accounts_only and stock_only:
        raise click.UsageError("--accounts-only and --stock-only are mutually exclusive")

    try:
        result = recalculation_service.recalculate_all(
            include_accounts=not stock_only,
            include_stock=not accounts_only,
        )
        failed = False
    except RecalculationPartialFailureError as e:
        result = e.result
        failed = True

    click.echo(f"Accounts processed:      {result.updated_accounts} ({result.corrected_accounts} corrected)")
    click.echo(f"Transactions processed:  {result.total_transactions_processed}")
    click.echo(f"Payments processed:      {result.total_payments_processed}")
    click.echo(f"Stock rows processed:    {result.updated_stocks} ({result.corrected_stocks} corrected)")
    click.echo(f"Stock events processed:  {result.total_stock_events_processed}")

    if failed:
        for key in result.failed_keys:
            click.echo(f"FAIL {key}")
        raise click.ClickException(f"{len(result.failed_keys)} key(s) failed; re-run to retry")

    click.echo("PASS Recalculation complete.")


@ledger_group.command('check-consistency')
@click.option('--material-id', type=int, default=None, help='Limit the stock check to one material')
@with_appcontext
def check_consistency(material_id):
    """Compare materialized balances and stock against their ledgers."""
    accounts = recalculation_service.check_account_consistency()
    stock = recalculation_service.check_stock_consistency(material_id=material_id)

    click.echo(f"Accounts checked: {accounts['checked']}, inconsistent: {accounts['inconsistent']}")
    for issue in accounts["issues"]:
        click.echo(
            f"  account {issue['account_id']} ({issue['code']}): "
            f"stored {issue['stored_balance']} ledger {issue['ledger_balance']}"
        )

    click.echo(f"Stock rows checked: {stock['checked']}, inconsistent: {stock['inconsistent']}")
    for issue in stock["issues"]:
        click.echo(
            f"  material {issue['material_id']} / warehouse {issue['warehouse_id']}: "
            f"stored {issue['stored_stock']} ledger {issue['ledger_stock']}"
        )

    if accounts["inconsistent"] or stock["inconsistent"]:
        click.echo("WARN Run 'python -m flask ledger recalculate' to repair.")
    else:
        click.echo("PASS All projections match their ledgers.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
