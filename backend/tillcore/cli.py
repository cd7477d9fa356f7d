# Overview: Flask CLI command group for bootstrap, inspection and maintenance.

# backend/tillcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (PowerShell: $env:FLASK_APP="tillcore"; bash: export FLASK_APP=tillcore).
# - Use: python -m flask till <command> [options]
#
# - python -m flask till init [--seed] [--force]
#   Idempotent startup: schema, migrations, indexes, warm-up, optional seeding.
# - python -m flask till seed [--force] [--path seed.json]
#   Seed the catalog (skipped when products exist unless --force).
# - python -m flask till status
#   Health check: schema revision, table counts, cache statistics.
# - python -m flask till reset --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import TillcoreError
from .services.init_service import get_sequencer
from .services.product_cache import get_product_cache
from .services.schema_service import drop_schema
from .services.seed_service import load_seed_records, seed_catalog


@click.group('till')
def till_group():
    """Till data layer bootstrap and maintenance commands."""


@till_group.command('init')
@click.option('--seed/--no-seed', default=False, help='Seed the demo catalog when empty')
@click.option('--force', is_flag=True, help='Re-seed even when products exist')
@with_appcontext
def init_command(seed, force):
    """Run the initialization sequence and print its report."""
    click.echo("START Initializing till storage...")
    try:
        report = get_sequencer().initialize(seed=seed, force=force)
    except TillcoreError as exc:
        click.echo(f"FAIL {exc}")
        raise SystemExit(1)

    migrations = report.migrations
    click.echo(f"PASS Schema at revision {migrations.to_revision}"
               f" (applied: {', '.join(migrations.applied) or 'none'})")
    idx = report.advanced_indexes
    click.echo(f"PASS Advanced indexes: {idx.succeeded}/{idx.attempted} created")
    if idx.failed:
        click.echo(f"WARN {idx.failed} advanced indexes failed: {'; '.join(idx.errors)}")
    click.echo(f"PASS Products: {report.product_count}, transactions: {report.transaction_count}")
    if seed:
        click.echo(f"PASS Seeded {report.seeded} products")
    click.echo(f"DONE in {report.duration_ms:.0f} ms")


@till_group.command('seed')
@click.option('--force', is_flag=True, help='Replace products with matching ids')
@click.option('--path', 'path', type=click.Path(exists=True, dir_okay=False), default=None,
              help='JSON list of products (defaults to SEED_CATALOG_PATH)')
@with_appcontext
def seed_command(force, path):
    """Seed the product catalog."""
    get_sequencer().initialize()
    records = load_seed_records(path)
    seeded = seed_catalog(records, force=force)
    if seeded:
        click.echo(f"PASS Seeded {seeded} products")
    else:
        click.echo("SKIP Catalog already has products (use --force to overwrite)")


@till_group.command('status')
@with_appcontext
def status_command():
    """Print the health check as JSON."""
    click.echo(json.dumps(get_sequencer().health_check(), indent=2))


@till_group.command('reset')
@click.option('--yes', is_flag=True, help='Confirm dropping all till data')
@with_appcontext
def reset_command(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("Refusing to reset without --yes")
        raise SystemExit(1)
    click.echo(f"WARN Dropping tables in {current_app.config['SQLALCHEMY_DATABASE_URI']}")
    drop_schema()
    get_product_cache().clear()
    get_sequencer().reinitialize()
    click.echo("PASS Tables recreated")


def register_commands(app):
    app.cli.add_command(till_group)
