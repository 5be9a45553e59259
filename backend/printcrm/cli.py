# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/printcrm/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and one default user per role.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list
#   List all users with role and active status.
# - python -m flask users create --username anna --password "Password123!" --role MANAGER
#   Create a user (prompts if options are omitted).
# - python -m flask users deactivate anna
#   Deactivate a user and revoke all of their sessions.
# - python -m flask users grant anna view_all_deals
# - python -m flask users deny anna view_all_clients
#   Per-user GRANT/DENY override on top of the role defaults.
# - python -m flask users permissions anna
#   Print the effective permission codes.
#
# Ledger verification:
# - python -m flask inventory verify [--product-id 1]
#   Compare cached Product.stock with the movement ledger.
# - python -m flask payments verify [--deal-id 1]
#   Compare cached Deal.paid_amount_cents/payment_status with the payment ledger.

import sys

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .models.users import VALID_ROLES
from .services.auth_service import create_user, PasswordValidationError
from .services import inventory_service, payment_service, permission_service, session_service
from .validation import ConflictError, ValidationError


DEFAULT_PASSWORD = "Password123!"

DEFAULT_USERS = [
    ("superadmin", "SUPER_ADMIN", "Super Admin"),
    ("admin", "ADMIN", "Administrator"),
    ("operator", "OPERATOR", "Operator"),
    ("manager", "MANAGER", "Sales Manager"),
    ("accountant", "ACCOUNTANT", "Accountant"),
    ("warehouse", "WAREHOUSE", "Warehouse Clerk"),
    ("warehouse_manager", "WAREHOUSE_MANAGER", "Warehouse Manager"),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize PrintCRM: create tables and one default user per role.

    All passwords default to "Password123!".

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing PrintCRM...")

    db.create_all()
    click.echo("PASS Tables created")

    click.echo("\nUSERS Creating default users...")
    for username, role, full_name in DEFAULT_USERS:
        existing = db.session.query(User).filter_by(username=username).first()
        if existing:
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue

        try:
            create_user(username=username, password=DEFAULT_PASSWORD, role=role, full_name=full_name)
            db.session.commit()
            click.echo(f"PASS Created user: {username} with role '{role}'")
        except (ValidationError, ConflictError) as e:
            db.session.rollback()
            click.echo(f"FAIL Failed to create user '{username}': {str(e)}")

    click.echo("\n" + "="*60)
    click.echo("DONE PrintCRM Initialized Successfully!")
    click.echo("="*60)
    click.echo(f"\nDefault password for every seeded user: {DEFAULT_PASSWORD}")
    click.echo("SECURITY Change all passwords immediately in production!")
    click.echo("")


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


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(VALID_ROLES), prompt=True, help='Role')
@click.option('--full-name', default=None, help='Display name (defaults to username)')
@click.option('--email', default=None, help='Email address')
@with_appcontext
def create_user_cli(username, password, role, full_name, email):
    """
    Create a new user.

    Password must be at least 8 characters.
    """
    try:
        create_user(username=username, password=password, role=role, full_name=full_name, email=email)
        db.session.commit()
        click.echo(f"PASS Created user: {username} with role '{role}'")
        click.echo("SECURITY Password securely hashed with bcrypt")
    except PasswordValidationError as e:
        db.session.rollback()
        click.echo(f"FAIL Password validation failed: {str(e)}")
        sys.exit(1)
    except (ValidationError, ConflictError) as e:
        db.session.rollback()
        click.echo(f"FAIL Failed to create user: {str(e)}")
        sys.exit(1)


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Username':<20} {'Full name':<25} {'Role':<20} {'Active'}")
    click.echo("="*90)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {(user.full_name or ''):<25} {user.role:<20} {active_str}")

    click.echo("="*90 + "\n")


@users_group.command('deactivate')
@click.argument('username')
@with_appcontext
def deactivate_user(username):
    """Deactivate a user and revoke all of their sessions."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        sys.exit(1)

    user.is_active = False
    db.session.commit()
    revoked = session_service.revoke_all_user_sessions(user.id)
    click.echo(f"PASS Deactivated '{username}', revoked {revoked} session(s)")


def _apply_override(username: str, permission: str, override_type: str) -> None:
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        sys.exit(1)

    try:
        permission_service.set_override(
            user_id=user.id,
            permission_code=permission,
            override_type=override_type,
        )
        db.session.commit()
    except ValidationError as e:
        db.session.rollback()
        click.echo(f"FAIL {str(e)}")
        sys.exit(1)
    click.echo(f"PASS {override_type} {permission} for '{username}'")


@users_group.command('grant')
@click.argument('username')
@click.argument('permission')
@with_appcontext
def grant_permission(username, permission):
    """Grant a permission the user's role does not carry."""
    _apply_override(username, permission, "GRANT")


@users_group.command('deny')
@click.argument('username')
@click.argument('permission')
@with_appcontext
def deny_permission(username, permission):
    """Withdraw a permission the user's role would otherwise carry."""
    _apply_override(username, permission, "DENY")


@users_group.command('permissions')
@click.argument('username')
@with_appcontext
def show_permissions(username):
    """Print the effective permission codes of a user."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        sys.exit(1)
    for code in sorted(permission_service.get_user_permissions(user)):
        click.echo(code)


@click.group('inventory')
def inventory_group():
    """Stock ledger inspection commands."""


@inventory_group.command('verify')
@click.option('--product-id', type=int, default=None, help='Check a single product')
@with_appcontext
def verify_inventory(product_id):
    """Compare cached stock with the movement ledger. Exits 1 on drift."""
    try:
        report = inventory_service.verify_stock(product_id)
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")
        sys.exit(1)

    drift = [row for row in report if not row["consistent"]]
    for row in report:
        status = "PASS" if row["consistent"] else "FAIL"
        click.echo(
            f"{status} {row['sku']:<20} cached={row['cached_stock']:<8} ledger={row['ledger_stock']}"
        )

    click.echo(f"\n{len(report)} product(s) checked, {len(drift)} inconsistent")
    if drift:
        sys.exit(1)


@click.group('payments')
def payments_group():
    """Payment ledger inspection commands."""


@payments_group.command('verify')
@click.option('--deal-id', type=int, default=None, help='Check a single deal')
@with_appcontext
def verify_payments(deal_id):
    """Compare cached paid amount and payment status with the payment ledger. Exits 1 on drift."""
    try:
        report = payment_service.verify_payment_consistency(deal_id)
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")
        sys.exit(1)

    drift = [row for row in report if not row["consistent"]]
    for row in report:
        status = "PASS" if row["consistent"] else "FAIL"
        click.echo(
            f"{status} deal {row['deal_id']:<6} "
            f"cached={row['cached_paid_cents']}/{row['cached_status']:<8} "
            f"ledger={row['ledger_paid_cents']}/{row['ledger_status']}"
        )

    click.echo(f"\n{len(report)} deal(s) checked, {len(drift)} inconsistent")
    if drift:
        sys.exit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(payments_group)
