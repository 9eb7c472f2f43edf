"""
Transactional Executor

Applies migration units one at a time, each inside a single
BEGIN IMMEDIATE ... COMMIT. The unit's structural changes, its data
rewrites and its AppliedVersion record commit together or not at all.

Ordering is a checked precondition: a unit is only applied when its
version is exactly the current version + 1. The check runs once before the
transaction opens and again once the write lock is held, so a second
executor racing on the same store fails cleanly instead of double-applying.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from stratum.config import MigrateConfig
from stratum.errors import DataIntegrityViolation, MigrationFailed, OrderingViolation

from .backup import BackupInfo, BackupManager
from .manager import MigrationManager, MigrationRecord
from .migration_base import MigrationBase
from .registry import MigrationRegistry

logger = logging.getLogger(__name__)


def connect(db_path: Union[str, Path], config: Optional[MigrateConfig] = None) -> sqlite3.Connection:
    """
    Open a store connection for the executor.

    The connection runs in autocommit mode (isolation_level=None) so that
    transaction boundaries are exactly the ones the executor issues, and
    with foreign key enforcement on.
    """
    config = config or MigrateConfig()
    conn = sqlite3.connect(str(db_path), isolation_level=None, timeout=config.busy_timeout_ms / 1000)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@dataclass
class RunResult:
    """Outcome of MigrationExecutor.run()."""
    start_version: int
    end_version: int
    applied: List[MigrationRecord] = field(default_factory=list)
    planned: List[MigrationBase] = field(default_factory=list)
    dry_run: bool = False
    backup: Optional[BackupInfo] = None

    @property
    def up_to_date(self) -> bool:
        return not self.planned


class MigrationExecutor:
    """
    Transactional Executor - applies units strictly in version order

    Pattern: One transaction per unit, marker recorded inside it
    Lifetime: Bound to one connection; not shareable across threads

    Example:
        conn = connect(db_path, config)
        executor = MigrationExecutor(conn, config=config,
                                     backup_manager=BackupManager(db_path))
        result = executor.run()
        print(f"Now at v{result.end_version}")
    """

    def __init__(self,
                 conn: sqlite3.Connection,
                 registry: Optional[MigrationRegistry] = None,
                 config: Optional[MigrateConfig] = None,
                 backup_manager: Optional[BackupManager] = None):
        """
        Initialize the executor.

        Args:
            conn: Connection opened with connect() (autocommit mode)
            registry: Units to apply (default: discovered from stratum.migrations.versions)
            config: Active configuration (default: built-in defaults)
            backup_manager: Takes a snapshot before pending units run (optional)
        """
        if conn.in_transaction:
            raise MigrationFailed("Executor needs a connection with no open transaction")
        self.conn = conn
        self.registry = registry or MigrationRegistry()
        self.config = config or MigrateConfig()
        self.backup_manager = backup_manager
        # Read-only until a unit applies; the history table is created
        # inside the first unit's transaction
        self.manager = MigrationManager(conn)

    def current_version(self) -> int:
        return self.manager.get_schema_version()

    def pending(self, target: Optional[int] = None) -> List[MigrationBase]:
        return self.registry.get_pending_migrations(self.current_version(), target)

    def apply(self, migration: MigrationBase) -> MigrationRecord:
        """
        Apply one unit atomically.

        Args:
            migration: The unit; its version must be current + 1

        Returns:
            The AppliedVersion record written for the unit

        Raises:
            OrderingViolation: Version is not current + 1 (no transaction opened),
                               or another executor applied it first
            DataIntegrityViolation: A constraint failed; the unit was rolled back
            MigrationFailed: Any other failure; the unit was rolled back
        """
        expected = self.current_version() + 1
        if migration.version != expected:
            raise OrderingViolation(
                f"Cannot apply v{migration.version}: next version is v{expected}",
                version=migration.version,
            )

        migration.validate(self.conn)

        logger.info("Applying %s", migration.display_name)
        started = time.monotonic()

        # PRAGMA foreign_keys is a no-op inside a transaction
        if migration.disable_foreign_keys:
            self.conn.execute("PRAGMA foreign_keys = OFF")
        try:
            try:
                # Busy past busy_timeout_ms surfaces as MigrationFailed below
                self.conn.execute("BEGIN IMMEDIATE")
                self.manager.ensure_table()
                under_lock = self.current_version() + 1
                if migration.version != under_lock:
                    raise OrderingViolation(
                        f"Cannot apply v{migration.version}: another executor moved the store "
                        f"to v{under_lock - 1}",
                        version=migration.version,
                    )

                metadata = migration.up(self.conn, self.config)

                if migration.disable_foreign_keys:
                    self._check_foreign_keys(migration)

                duration_ms = int((time.monotonic() - started) * 1000)
                self.manager.record_migration(
                    migration.version, migration.description, duration_ms, metadata
                )
                self.conn.execute("COMMIT")
            except BaseException as e:
                self._rollback()
                logger.error("Failed to apply %s: %s", migration.display_name, e)
                classified = self._classify(migration, e)
                if classified is e:
                    raise
                raise classified from e
        finally:
            if migration.disable_foreign_keys:
                self.conn.execute("PRAGMA foreign_keys = ON")

        logger.info("Applied %s in %d ms", migration.display_name, duration_ms)
        return self.manager.get_migration_record(migration.version)

    def _check_foreign_keys(self, migration: MigrationBase) -> None:
        violations = self.conn.execute("PRAGMA foreign_key_check").fetchall()
        if violations:
            table, rowid, parent, _ = violations[0]
            raise DataIntegrityViolation(
                f"{migration.display_name} left {len(violations)} dangling foreign keys "
                f"(first: {table} rowid {rowid} -> {parent})",
                version=migration.version,
            )

    def _rollback(self) -> None:
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    @staticmethod
    def _classify(migration: MigrationBase, error: BaseException) -> BaseException:
        if isinstance(error, (OrderingViolation, DataIntegrityViolation, MigrationFailed)):
            return error
        if isinstance(error, sqlite3.IntegrityError):
            return DataIntegrityViolation(
                f"{migration.display_name} violated a constraint: {error}",
                version=migration.version,
            )
        if isinstance(error, Exception):
            return MigrationFailed(
                f"{migration.display_name} failed: {error}",
                version=migration.version,
            )
        # KeyboardInterrupt and friends: rolled back, re-raised as-is
        return error

    def run(self, target: Optional[int] = None, dry_run: bool = False) -> RunResult:
        """
        Apply all pending units in ascending order.

        Args:
            target: Stop after this version (default: latest)
            dry_run: Only report what would be applied

        Returns:
            RunResult with the applied records

        Raises:
            OrderingViolation: The history is not a contiguous prefix, or
                               target is behind the current version
            DataIntegrityViolation, MigrationFailed: A unit failed; the store
                               stays at the last unit that committed
        """
        self.manager.verify_prefix()
        start = self.current_version()

        latest = self.registry.get_latest_version()
        if start > latest:
            raise OrderingViolation(
                f"Store is at v{start} but the newest known unit is v{latest}", version=start
            )
        if target is not None and target < start:
            raise OrderingViolation(
                f"Target v{target} is behind the store's v{start}; units are irreversible",
                version=target,
            )

        planned = self.registry.get_pending_migrations(start, target)
        result = RunResult(start_version=start, end_version=start, planned=planned, dry_run=dry_run)

        if not planned:
            logger.info("Schema is up to date (v%d)", start)
            return result
        if dry_run:
            logger.info("Dry run: would apply %s", ", ".join(m.display_name for m in planned))
            return result

        if self.backup_manager is not None and self.backup_manager.db_path.exists():
            result.backup = self.backup_manager.create_backup(
                metadata={"pending": [m.version for m in planned]}
            )
            self.backup_manager.cleanup_old_backups(self.config.backups.keep)

        for migration in planned:
            result.applied.append(self.apply(migration))
            result.end_version = migration.version

        logger.info("Applied %d migrations. New version: v%d", len(result.applied), result.end_version)
        return result
