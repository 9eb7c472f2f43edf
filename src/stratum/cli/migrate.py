"""Migration commands for stratum CLI."""
import json
import sys
from typing import Optional

import click

from stratum.errors import MigrationError
from stratum.migrations import BackupManager, MigrationExecutor, MigrationManager, connect

# Local CLI imports
from .common import (
    get_config,
    require_database,
    echo_verbose,
    echo_normal,
    echo_quiet,
    VERBOSITY_NORMAL,
)


@click.group()
def migrate_group():
    """Schema migration commands."""
    pass


@migrate_group.command('run')
@click.option('--target', '-t', type=int, default=None,
              help='Stop after this version (default: latest)')
@click.option('--dry-run', is_flag=True, default=False,
              help='Show pending migrations without applying them')
@click.option('--no-backup', is_flag=True, default=False,
              help='Skip the pre-migration snapshot')
@click.option('--create', is_flag=True, default=False,
              help='Create the database if it does not exist')
@click.pass_context
def migrate_run(ctx, target: Optional[int], dry_run: bool, no_backup: bool, create: bool) -> None:
    """Apply pending migrations in version order.

    Each migration runs in its own transaction. If one fails, it is rolled
    back and the store stays at the last migration that succeeded.

    Examples:
        stratum migrate run
        stratum migrate run --dry-run
        stratum migrate run --target 4
        stratum --db ./store.sqlite migrate run --create
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = get_config(ctx)
    if not create:
        require_database(config, verbosity)
    config.database.parent.mkdir(parents=True, exist_ok=True)

    backup_manager = None
    if config.backups.enabled and not no_backup:
        backup_manager = BackupManager(config.database, config.backups.directory)

    conn = connect(config.database, config)
    try:
        executor = MigrationExecutor(conn, config=config, backup_manager=backup_manager)
        result = executor.run(target=target, dry_run=dry_run)
    except MigrationError as e:
        echo_quiet(click.style(f"Error: {e}", fg="red"), verbosity)
        if e.version is not None:
            echo_quiet(f"Store left at v{MigrationManager(conn).get_schema_version()}", verbosity)
        sys.exit(1)
    finally:
        conn.close()

    if result.up_to_date:
        echo_normal(click.style(f"✓ Schema is up to date (v{result.start_version})", fg="green"), verbosity)
        return

    if result.dry_run:
        echo_normal(click.style("Dry run: no changes made", fg="yellow", bold=True), verbosity)
        for migration in result.planned:
            echo_normal(f"  would apply {click.style(migration.display_name, fg='cyan')}", verbosity)
        return

    if result.backup is not None:
        echo_verbose(f"Snapshot: {result.backup.path}", verbosity)
    for record in result.applied:
        echo_normal(
            f"{click.style('✓', fg='green')} v{record.version:03d} {record.description} "
            f"({record.duration_ms} ms)",
            verbosity,
        )
        if record.metadata:
            echo_verbose(f"    {json.dumps(record.metadata, sort_keys=True)}", verbosity)
    echo_quiet(
        click.style(f"Applied {len(result.applied)} migrations. Now at v{result.end_version}", fg="green", bold=True),
        verbosity,
    )


@migrate_group.command('status')
@click.pass_context
def migrate_status(ctx) -> None:
    """Show the current schema version and pending migrations.

    Examples:
        stratum migrate status
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = get_config(ctx)
    require_database(config, verbosity)

    conn = connect(config.database, config)
    try:
        executor = MigrationExecutor(conn, config=config)
        current = executor.current_version()
        latest = executor.registry.get_latest_version()
        pending = executor.pending()
    finally:
        conn.close()

    echo_normal(click.style("Migration Status", fg="cyan", bold=True), verbosity)
    echo_normal("=" * 50, verbosity)
    echo_normal(f"Database: {click.style(str(config.database), fg='cyan')}", verbosity)
    echo_quiet(f"Current version: v{current}", verbosity)
    echo_normal(f"Latest version:  v{latest}", verbosity)

    if not pending:
        echo_normal(click.style("✓ Up to date", fg="green"), verbosity)
        return

    echo_normal(f"\nPending ({len(pending)}):", verbosity)
    for migration in pending:
        echo_normal(f"  {click.style(migration.display_name, fg='yellow')}", verbosity)


@migrate_group.command('history')
@click.option('--json-output', '--json', 'json_output', is_flag=True, help='Output as JSON')
@click.pass_context
def migrate_history(ctx, json_output: bool) -> None:
    """List applied migrations.

    Examples:
        stratum migrate history
        stratum migrate history --json
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = get_config(ctx)
    require_database(config, verbosity)

    conn = connect(config.database, config)
    try:
        records = MigrationExecutor(conn, config=config).manager.get_applied_migrations()
    finally:
        conn.close()

    if json_output:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        echo_normal("No migrations applied", verbosity)
        return

    for record in records:
        applied_at = record.applied_at.strftime("%Y-%m-%d %H:%M:%S") if record.applied_at else "?"
        echo_normal(
            f"v{record.version:03d}  {applied_at}  {record.description} "
            f"{click.style(f'({record.duration_ms} ms)', dim=True)}",
            verbosity,
        )
