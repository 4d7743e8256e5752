# Overview: Flask CLI command groups for bootstrap and order maintenance.

# backend/rentaldesk/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--branch "Main Branch"] [--timezone Asia/Kolkata]
#   Idempotent bootstrap: creates tables, a branch, a super admin, a branch admin, and a demo customer.
#
# Staff:
# - python -m flask staff create --username asha --full-name "Asha R" --password "Password123!" --role staff --branch-id 1
#   Create a staff account (prompts if options are omitted).
#
# Orders:
# - python -m flask orders sweep-expired [--branch-id 1]
#   Cancel scheduled bookings whose start has passed (ignores the sweep throttle).

import click
from flask.cli import with_appcontext

from .errors import RentalError
from .extensions import db
from .models import Branch, Customer, Staff
from .services import auth_service, expiry_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--branch', 'branch_name', default='Main Branch', help='Branch name')
@click.option('--branch-code', default='MAIN', help='Branch code')
@click.option('--timezone', 'tz_name', default='UTC', help='IANA timezone for the branch')
@with_appcontext
def init_system(branch_name, branch_code, tz_name):
    """
    Initialize the rental desk: tables, default branch, and default users.

    Creates:
    - Default branch (if none exists)
    - Users: superadmin (super_admin), manager (branch_admin)
    - One demo customer
    - All passwords default to: "Password123!"

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing rental desk...")
    db.create_all()

    branch = db.session.query(Branch).filter_by(code=branch_code).first()
    if not branch:
        branch = Branch(name=branch_name, code=branch_code, timezone=tz_name)
        db.session.add(branch)
        db.session.commit()
        click.echo(f"PASS Created branch: {branch.name} (ID: {branch.id})")
    else:
        click.echo(f"PASS Using existing branch: {branch.name} (ID: {branch.id})")

    defaults = [
        ("superadmin", "Super Admin", "super_admin", None),
        ("manager", "Branch Manager", "branch_admin", branch.id),
    ]
    for username, full_name, role, branch_id in defaults:
        if db.session.query(Staff).filter_by(username=username).first():
            click.echo(f"SKIP Staff exists: {username}")
            continue
        auth_service.create_staff(
            username=username,
            full_name=full_name,
            password="Password123!",
            role=role,
            branch_id=branch_id,
        )
        click.echo(f"PASS Created staff: {username} ({role})")

    if not db.session.query(Customer).filter_by(branch_id=branch.id).first():
        db.session.add(Customer(branch_id=branch.id, customer_number="C-0001", name="Walk-in Customer"))
        db.session.commit()
        click.echo("PASS Created demo customer")

    click.echo("DONE Rental desk initialized")


@click.group('staff')
def staff_group():
    """Staff account commands."""


@staff_group.command('create')
@click.option('--username', prompt=True)
@click.option('--full-name', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--role', type=click.Choice(['super_admin', 'branch_admin', 'staff']), default='staff')
@click.option('--branch-id', type=int, default=None)
@with_appcontext
def create_staff_command(username, full_name, password, role, branch_id):
    """Create a staff account."""
    try:
        staff = auth_service.create_staff(
            username=username,
            full_name=full_name,
            password=password,
            role=role,
            branch_id=branch_id,
        )
    except RentalError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created staff {staff.username} (ID: {staff.id}, role: {staff.role})")


@click.group('orders')
def orders_group():
    """Order maintenance commands."""


@orders_group.command('sweep-expired')
@click.option('--branch-id', type=int, default=None, help='Only sweep this branch')
@with_appcontext
def sweep_expired_command(branch_id):
    """Cancel scheduled bookings whose start has passed."""
    if branch_id is not None:
        results = [expiry_service.sweep_expired_bookings(branch_id, force=True)]
    else:
        results = expiry_service.sweep_all_branches(force=True)

    total = 0
    for result in results:
        total += len(result.cancelled_ids)
        click.echo(f"Branch {result.branch_id}: cancelled {len(result.cancelled_ids)} booking(s)")
    click.echo(f"DONE {total} booking(s) cancelled")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(staff_group)
    app.cli.add_command(orders_group)
