# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/storepos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and the default admin/manager/cashier users.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users list
# - python -m flask users create --username till2 --password "Password123!" --role cashier
#
# Configuration:
# - python -m flask config set-upi --upi-id shop@okbank [--payee-name "Corner Store"]
#
# Payments:
# - python -m flask payments expire-pending [--minutes 30]
#   Fail UPI payments left pending longer than the timeout (logged for reconciliation).

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import ServiceError
from .extensions import db
from .models import User
from .models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER, VALID_ROLES
from .services import auth_service, config_service, payment_service


DEFAULT_PASSWORD = "Password123!"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Create tables (if missing) and default users:
    admin, manager, cashier, all with password "Password123!".

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing store POS...")
    db.create_all()

    for username, role in (("admin", ROLE_ADMIN), ("manager", ROLE_MANAGER), ("cashier", ROLE_CASHIER)):
        if db.session.query(User).filter_by(username=username).first():
            click.echo(f"PASS User {username} already exists")
            continue
        auth_service.create_user(username, DEFAULT_PASSWORD, role, full_name=username.title())
        click.echo(f"PASS Created {role} user: {username}")

    click.echo("DONE System initialized.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@with_appcontext
def list_users_cli():
    for user in auth_service.list_users():
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.username:<20} {user.role:<8} {status}")


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(VALID_ROLES)), prompt=True, help='Role')
@click.option('--full-name', default=None, help='Display name')
@with_appcontext
def create_user_cli(username, password, role, full_name):
    """
    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter, lowercase letter, digit and special character
    """
    try:
        user = auth_service.create_user(username, password, role, full_name=full_name)
    except ServiceError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created {user.role} user: {user.username} (ID: {user.id})")


@click.group('config')
def config_group():
    """Shop configuration commands."""


@config_group.command('set-upi')
@click.option('--upi-id', required=True, help='UPI collection ID (name@bank)')
@click.option('--payee-name', default=None, help='Name shown in the payer\'s UPI app')
@with_appcontext
def set_upi_cli(upi_id, payee_name):
    try:
        row = config_service.set_upi_id(upi_id, payee_name=payee_name)
    except ServiceError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS UPI ID set to {row.upi_id}")


@click.group('payments')
def payments_group():
    """Payment maintenance commands."""


@payments_group.command('expire-pending')
@click.option('--minutes', type=int, default=None, help='Age after which pending UPI payments fail')
@with_appcontext
def expire_pending_cli(minutes):
    minutes = minutes or current_app.config["PENDING_UPI_TIMEOUT_MINUTES"]
    expired = payment_service.expire_pending_payments(minutes)
    for payment in expired:
        click.echo(f"EXPIRED payment {payment.id} (sale {payment.sale_id}, {payment.amount:.2f})")
    click.echo(f"DONE {len(expired)} pending payment(s) older than {minutes} minutes expired.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(config_group)
    app.cli.add_command(payments_group)
