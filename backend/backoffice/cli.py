# Overview: Flask CLI command groups for bootstrap, access setup, and maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (dev/test; use `flask db upgrade` with migrations elsewhere).
#
# Stores:
# - python -m flask stores create --name "Main Store" --currency LAK --supported LAK,THB,USD
#   Create a store (tenant) with its base and accepted currencies.
#
# Users and permissions:
# - python -m flask users create --store-id 1 --username clerk --role clerk
#   Create a user and grant the role's default permissions.
# - python -m flask users grant clerk inventory.adjust purchase.settle
#   Grant individual permission codes.
#
# Sessions:
# - python -m flask sessions issue clerk --ttl-hours 8
#   Issue a bearer token for a user (printed once, stored hashed).
#
# Maintenance:
# - python -m flask maintenance cleanup-idempotency --retention-days 14 --stale-minutes 15
#   Fail stale PROCESSING idempotency rows and delete expired ones.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Store, User
from .permissions import DEFAULT_ROLE_PERMISSIONS
from .services import maintenance_service, permission_service, session_service
from .time_utils import to_utc_z


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db_cli():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('stores')
def stores_group():
    """Store (tenant) management commands."""


@stores_group.command('create')
@click.option('--name', prompt=True, help='Store name')
@click.option('--code', default=None, help='Short store code')
@click.option('--currency', default='LAK', show_default=True, help='Store base currency')
@click.option('--supported', default=None, help='Comma separated accepted currencies (base is always included)')
@with_appcontext
def create_store_cli(name, code, currency, supported):
    """Create a new store."""
    currency = currency.strip().upper()
    codes = [c.strip().upper() for c in (supported or "").split(",") if c.strip()]
    if currency not in codes:
        codes.insert(0, currency)

    store = Store(name=name, code=code, currency=currency, supported_currencies=",".join(codes))
    db.session.add(store)
    db.session.commit()
    click.echo(f"PASS Created store: {store.name} (ID: {store.id}, currency: {store.currency}, accepts: {store.supported_currencies})")


@click.group('users')
def users_group():
    """User and permission commands."""


@users_group.command('create')
@click.option('--store-id', type=int, required=True, help='Store the user works in')
@click.option('--username', prompt=True, help='Username')
@click.option('--display-name', default=None, help='Display name')
@click.option('--role', type=click.Choice(sorted(DEFAULT_ROLE_PERMISSIONS)), default=None, help='Grant default permissions of a role')
@with_appcontext
def create_user_cli(store_id, username, display_name, role):
    """Create a new user, optionally with a role's default permissions."""
    store = db.session.get(Store, store_id)
    if not store:
        click.echo(f"FAIL Store ID {store_id} not found")
        return
    if db.session.query(User).filter_by(username=username).first():
        click.echo(f"FAIL Username '{username}' already exists")
        return

    user = User(store_id=store.id, username=username, display_name=display_name, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user: {user.username} (ID: {user.id}, store: {store.name})")

    if role:
        granted = permission_service.grant_role(user.id, role)
        click.echo(f"PASS Granted {len(granted)} permissions from role '{role}'")


@users_group.command('grant')
@click.argument('username')
@click.argument('permission_codes', nargs=-1, required=True)
@with_appcontext
def grant_permissions_cli(username, permission_codes):
    """Grant one or more permission codes to a user."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return
    try:
        granted = permission_service.grant_permissions(user.id, list(permission_codes))
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return
    if granted:
        click.echo(f"PASS Granted to {username}: {', '.join(granted)}")
    else:
        click.echo(f"INFO {username} already holds all requested permissions")


@click.group('sessions')
def sessions_group():
    """Bearer session commands."""


@sessions_group.command('issue')
@click.argument('username')
@click.option('--ttl-hours', type=int, default=None, help='Session lifetime (defaults to SESSION_TTL_HOURS)')
@with_appcontext
def issue_session_cli(username, ttl_hours):
    """Issue a bearer token for a user. The token is shown once."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return
    try:
        session, token = session_service.issue_session(user.id, ttl_hours=ttl_hours)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Session {session.id} for {username} expires {to_utc_z(session.expires_at)}")
    click.echo(token)


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-idempotency')
@click.option('--retention-days', type=int, default=None, help='Defaults to IDEMPOTENCY_RETENTION_DAYS')
@click.option('--stale-minutes', type=int, default=None, help='Defaults to IDEMPOTENCY_STALE_PROCESSING_MINUTES')
@with_appcontext
def cleanup_idempotency_cli(retention_days, stale_minutes):
    """
    Cleanup idempotency requests.

    PROCESSING rows older than the stale window become FAILED (408);
    terminal rows older than the retention window are deleted.
    """
    try:
        result = maintenance_service.cleanup_idempotency(
            retention_days=retention_days,
            stale_processing_minutes=stale_minutes,
        )
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return
    remaining = result["remaining"]
    click.echo(
        f"Marked {result['stale_marked']} stale requests FAILED, deleted {result['deleted']} "
        f"(remaining: {remaining['processing']} processing, {remaining['succeeded']} succeeded, "
        f"{remaining['failed']} failed)."
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(users_group)
    app.cli.add_command(sessions_group)
    app.cli.add_command(maintenance_group)
