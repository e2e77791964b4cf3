#!/usr/bin/env python
"""
Management Script

CLI commands for database migrations (Flask-Migrate) and sync maintenance.

Usage:
    # Initialize migrations (first time only)
    python manage.py db init

    # Create a new migration
    python manage.py db migrate -m "Add new column"

    # Apply migrations
    python manage.py db upgrade

    # Sync maintenance
    python manage.py sync-cleanup --completed-days 7 --stale-days 30
    python manage.py release-stale-claims --timeout 300
    python manage.py reconcile-counters
"""
import os
import sys

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask.cli import with_appcontext
import click
from sqlalchemy import inspect

from offline_sync import create_app
from offline_sync.extensions import db

# Create app instance
app = create_app()


@app.cli.command('db-status')
@with_appcontext
def db_status():
    """Show database connection status and table info."""
    try:
        # Test connection
        result = db.session.execute(db.text('SELECT 1'))
        result.fetchone()
        click.echo(click.style('✓ Database connection OK', fg='green'))

        tables = inspect(db.engine).get_table_names()

        click.echo('\nTables in database:')
        for table in tables:
            click.echo(f'  - {table}')

    except Exception as e:
        click.echo(click.style(f'✗ Database error: {e}', fg='red'))


@app.cli.command('sync-cleanup')
@click.option('--completed-days', type=int, default=None, help='Retention for completed changes')
@click.option('--stale-days', type=int, default=None, help='Inactivity before a device is removed')
@click.option('--max-attempts', type=int, default=None, help='Attempts after which failures are purged')
@with_appcontext
def sync_cleanup(completed_days, stale_days, max_attempts):
    """Run the sync retention sweeps."""
    from offline_sync.services.sync_service import SyncService
    results = SyncService.cleanup(
        completed_retention_days=completed_days,
        stale_device_days=stale_days,
        max_attempts=max_attempts,
    )
    click.echo(click.style('✓ Cleanup completed', fg='green'))
    for key, value in results.items():
        click.echo(f'  - {key}: {value}')


@app.cli.command('release-stale-claims')
@click.option('--timeout', type=int, default=None, help='Seconds before a claim counts as orphaned')
@with_appcontext
def release_stale_claims(timeout):
    """Recover changes and devices left claimed by a crashed worker."""
    from offline_sync.services.sync_service import SyncService
    released = SyncService.release_stale_claims(timeout)
    if released['items'] or released['devices']:
        click.echo(click.style(
            f"✓ Released {released['items']} changes and {released['devices']} device claims",
            fg='green',
        ))
    else:
        click.echo('No stale claims found')


@app.cli.command('reconcile-counters')
@click.option('--user-id', default=None, help='Only devices of this user')
@click.option('--device-id', default=None, help='Only this device')
@with_appcontext
def reconcile_counters(user_id, device_id):
    """Recompute pending counters from the change queue."""
    from offline_sync.services.sync import RetentionService
    corrected = RetentionService.from_config().reconcile_pending_counts(user_id, device_id)
    if corrected:
        click.echo(click.style(f'✓ Corrected counters on {corrected} devices', fg='yellow'))
    else:
        click.echo('All counters consistent')


if __name__ == '__main__':
    # Support running with flask CLI
    import subprocess

    if len(sys.argv) > 1 and sys.argv[1] == 'db':
        # Use flask db commands
        os.environ['FLASK_APP'] = 'manage.py'
        subprocess.run(['flask'] + sys.argv[1:])
    else:
        # Run custom commands
        app.cli()
