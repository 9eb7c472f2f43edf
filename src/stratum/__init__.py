"""
Stratum - versioned schema migrations for the network discovery store

Evolves a live SQLite store one atomic, ordered unit at a time: structural
changes, legacy principal merges, identity backfills and embedded payload
reshapes, never leaving the store partially migrated.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .config import MigrateConfig, load_config
from .errors import (
    StratumError,
    ConfigError,
    MigrationError,
    OrderingViolation,
    DataIntegrityViolation,
    MigrationFailed,
)
from .migrations import MigrationExecutor, MigrationRegistry, BackupManager, connect

__all__ = [
    "__version__",
    "MigrateConfig",
    "load_config",
    "StratumError",
    "ConfigError",
    "MigrationError",
    "OrderingViolation",
    "DataIntegrityViolation",
    "MigrationFailed",
    "MigrationExecutor",
    "MigrationRegistry",
    "BackupManager",
    "connect",
]
