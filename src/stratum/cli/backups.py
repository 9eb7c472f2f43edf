"""Snapshot commands for stratum CLI."""
import json

import click

from stratum.migrations import BackupManager

# Local CLI imports
from .common import (
    get_config,
    echo_normal,
    echo_quiet,
    VERBOSITY_NORMAL,
)


def _format_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


@click.group()
def backups_group():
    """Pre-migration snapshot commands."""
    pass


@backups_group.command('list')
@click.option('--json-output', '--json', 'json_output', is_flag=True, help='Output as JSON')
@click.pass_context
def backups_list(ctx, json_output: bool) -> None:
    """List snapshots of the store, newest first.

    Examples:
        stratum backups list
        stratum backups list --json
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = get_config(ctx)
    backups = BackupManager(config.database, config.backups.directory).list_backups()

    if json_output:
        click.echo(json.dumps([b.to_dict() for b in backups], indent=2, default=str))
        return

    if not backups:
        echo_normal("No snapshots found", verbosity)
        return

    echo_normal(click.style(f"Snapshots of {config.database}", fg="cyan", bold=True), verbosity)
    for backup in backups:
        echo_quiet(
            f"{backup.created_at.strftime('%Y-%m-%d %H:%M:%S')}  v{backup.schema_version}  "
            f"{_format_size(backup.size_bytes):>9}  {backup.path}",
            verbosity,
        )


@backups_group.command('prune')
@click.option('--keep', '-k', type=click.IntRange(min=1), default=None,
              help='Number of snapshots to keep (default: backups.keep from config)')
@click.pass_context
def backups_prune(ctx, keep) -> None:
    """Delete all but the newest snapshots.

    Examples:
        stratum backups prune
        stratum backups prune --keep 2
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    config = get_config(ctx)
    keep = keep if keep is not None else config.backups.keep

    deleted = BackupManager(config.database, config.backups.directory).cleanup_old_backups(keep)
    echo_normal(click.style(f"✓ Removed {deleted} snapshots (kept newest {keep})", fg="green"), verbosity)
