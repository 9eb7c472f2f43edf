"""
Stratum Migration System

Versioned schema migration and data reconciliation for the SQLite store.

Key Features:
- Ordered, append-only registry of migration units
- One transaction per unit; the applied-version marker commits with it
- Ordering checked before and under the write lock (version == current + 1)
- Guarded structural steps, so units tolerate any historical starting shape
- Legacy principal merge, email backfill and discovery record reshaping
- Snapshot before pending units run
"""

from .migration_base import MigrationBase
from .registry import MigrationRegistry
from .manager import MigrationManager, MigrationRecord
from .executor import MigrationExecutor, RunResult, connect
from .backup import BackupManager, BackupInfo

__all__ = [
    "MigrationBase",
    "MigrationRegistry",
    "MigrationManager",
    "MigrationRecord",
    "MigrationExecutor",
    "RunResult",
    "connect",
    "BackupManager",
    "BackupInfo",
]
