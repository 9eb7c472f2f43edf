"""Shared utilities for stratum CLI commands."""
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from stratum.config import MigrateConfig, load_config
from stratum.errors import ConfigError

# Verbosity levels
VERBOSITY_QUIET = 0
VERBOSITY_NORMAL = 1
VERBOSITY_VERBOSE = 2

_LOG_LEVELS = {
    VERBOSITY_QUIET: logging.WARNING,
    VERBOSITY_NORMAL: logging.WARNING,
    VERBOSITY_VERBOSE: logging.DEBUG,
}


class ClickEchoHandler(logging.Handler):
    """Log handler that writes through click.echo to whatever stderr is current."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:
            self.handleError(record)


def setup_logging(verbosity: int) -> None:
    """Route stratum's log records to stderr at a level matching verbosity."""
    logger = logging.getLogger("stratum")
    logger.setLevel(_LOG_LEVELS.get(verbosity, logging.WARNING))
    if not any(isinstance(h, ClickEchoHandler) for h in logger.handlers):
        handler = ClickEchoHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)


def get_config(ctx: click.Context) -> MigrateConfig:
    """Load the config for this invocation, applying --db on top.

    Exits with status 1 if config.yaml is invalid.
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    try:
        config = load_config(ctx.obj.get('config_path'))
    except ConfigError as e:
        echo_quiet(click.style(f"Error: {e}", fg="red"), verbosity)
        sys.exit(1)

    db_path: Optional[Path] = ctx.obj.get('db_path')
    if db_path:
        config.database = Path(db_path)
    return config


def require_database(config: MigrateConfig, verbosity: int) -> Path:
    """Exit with status 1 unless the store exists."""
    if not config.database.exists():
        echo_quiet(click.style(f"Error: Database not found: {config.database}", fg="red"), verbosity)
        sys.exit(1)
    return config.database


def should_print(verbosity: int, message_level: int) -> bool:
    """Determine if a message should be printed based on verbosity settings.

    Args:
        verbosity: Current verbosity level (0=quiet, 1=normal, 2=verbose).
        message_level: Minimum verbosity level required for this message.
    """
    return verbosity >= message_level


def echo_verbose(message: str, verbosity: int) -> None:
    """Print a message only in verbose mode."""
    if should_print(verbosity, VERBOSITY_VERBOSE):
        click.echo(message, err=False)


def echo_normal(message: str, verbosity: int) -> None:
    """Print a message in normal and verbose modes."""
    if should_print(verbosity, VERBOSITY_NORMAL):
        click.echo(message, err=False)


def echo_quiet(message: str, verbosity: int) -> None:
    """Print a critical message that should always be shown (even in quiet mode)."""
    click.echo(message, err=False)
