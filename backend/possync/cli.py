# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/possync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Accounts:
# - python -m flask users create --name "Guru" --email guru@example.com --password "Secret123" --company "Guru Stores"
#   Create a shop account (company code derived from the shop name).
# - python -m flask users list
#   List accounts with their company codes.
#
# Vouchers:
# - python -m flask vouchers show-sequences [--user-id <id>]
#   Show the voucher counters (next number per company code and day).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .services.auth_service import create_user, PasswordValidationError
from .services import voucher_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables. Existing data is kept."""
    db.create_all()
    click.echo("PASS Database schema is up to date.")


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

    click.echo("PASS Database reset complete.")


@click.group('users')
def users_group():
    """Account inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Owner name')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--company', default=None, help='Shop name (company code is derived from it)')
@click.option('--location', default=None, help='Shop location')
@with_appcontext
def create_user_cli(name, email, password, company, location):
    """
    Create a shop account.

    Password must be 8+ characters with at least one letter and one digit.
    """
    try:
        user = create_user(
            name=name,
            email=email,
            password=password,
            company=company,
            location=location,
        )
        click.echo(f"PASS Created user: {user.email} (id {user.id})")
        click.echo(f"     Company code: {user.company_code}")

    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
    except ValueError as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all accounts."""
    users = db.session.query(User).order_by(User.created_at).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<38} {'Email':<30} {'Code':<6} {'Active':<8} {'Company'}")
    click.echo("="*100)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<38} {user.email:<30} {user.company_code:<6} {active_str:<8} {user.company or ''}")

    click.echo("="*100 + "\n")


@click.group('vouchers')
def vouchers_group():
    """Voucher counter inspection."""


@vouchers_group.command('show-sequences')
@click.option('--user-id', default=None, help='Only this user')
@with_appcontext
def show_sequences(user_id):
    """Next voucher number per (user, company code, day)."""
    rows = voucher_service.list_sequences(user_id)

    if not rows:
        click.echo("No voucher sequences yet.")
        return

    for row in rows:
        next_number = voucher_service.format_voucher_number(row.company_code, row.date_str, row.next_number)
        click.echo(f"{row.user_id:<38} {row.company_code:<6} {row.date_str}  next: {next_number}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(vouchers_group)
