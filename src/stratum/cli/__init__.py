"""stratum CLI - forward-only schema migrations for SQLite stores

This module wires the command groups together:
- migrate.py: migrate run, status, history
- backups.py: backups list, prune
- common.py: shared utilities
"""
from pathlib import Path
import click

# Local imports
from .common import setup_logging
from .migrate import migrate_group
from .backups import backups_group

# CLI version - matches project version
__version__ = "0.1.0"


@click.group()
@click.version_option(version=__version__, prog_name="stratum")
@click.option('--db', 'db_path', type=click.Path(dir_okay=False), default=None, envvar='STRATUM_DB',
              help='Path to the SQLite store (default: from config, ~/.stratum/store.sqlite)')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None, envvar='STRATUM_CONFIG',
              help='Path to config.yaml (default: ~/.stratum/config.yaml)')
@click.option('--verbose', '-v', is_flag=True, default=False,
              help='Enable verbose output')
@click.option('--quiet', '-q', is_flag=True, default=False,
              help='Suppress non-essential output')
@click.pass_context
def cli(ctx, db_path, config_path, verbose, quiet):
    """stratum - forward-only schema migrations

    Brings a SQLite store up to the latest schema version, one
    transactional unit at a time.

    \b
    Key Commands:
        migrate run       Apply pending migrations
        migrate status    Show current and pending versions
        migrate history   List applied migrations
        backups list      List pre-migration snapshots
        backups prune     Delete old snapshots

    \b
    Examples:
        stratum --db ./store.sqlite migrate status
        stratum --db ./store.sqlite migrate run
        stratum -v migrate run --target 4
    """
    from .common import VERBOSITY_QUIET, VERBOSITY_NORMAL, VERBOSITY_VERBOSE

    ctx.ensure_object(dict)

    # Validate mutually exclusive flags
    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    # Set verbosity level
    if quiet:
        ctx.obj['verbosity'] = VERBOSITY_QUIET
    elif verbose:
        ctx.obj['verbosity'] = VERBOSITY_VERBOSE
    else:
        ctx.obj['verbosity'] = VERBOSITY_NORMAL

    ctx.obj['db_path'] = Path(db_path) if db_path else None
    ctx.obj['config_path'] = Path(config_path) if config_path else None

    setup_logging(ctx.obj['verbosity'])


# Register command groups
cli.add_command(migrate_group, name='migrate')
cli.add_command(backups_group, name='backups')


def main():
    """Entry point for the CLI."""
    cli()


__all__ = [
    '__version__',
    'cli',
    'main',
]
