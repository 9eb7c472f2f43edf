"""
Migration Manager for stratum
Tracks applied versions and migration history.

This module provides migration tracking capabilities:
- Record every applied unit in the _migrations table
- Mirror the current version into PRAGMA user_version
- Query migration history
- Verify that applied versions form a contiguous prefix 1..N
"""

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from stratum.errors import OrderingViolation


@dataclass
class MigrationRecord:
    """A stored AppliedVersion record."""
    id: int
    version: int
    description: str
    applied_at: datetime
    duration_ms: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "version": self.version,
            "description": self.description,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "duration_ms": self.duration_ms,
            "metadata": self.metadata or {}
        }

    @classmethod
    def from_row(cls, row: tuple) -> "MigrationRecord":
        return cls(
            id=row[0],
            version=row[1],
            description=row[2],
            applied_at=datetime.fromisoformat(row[3]) if row[3] else None,
            duration_ms=row[4],
            metadata=json.loads(row[5]) if row[5] else None
        )


_SELECT_RECORD = """
    SELECT id, version, description, applied_at, duration_ms, metadata
    FROM _migrations
"""


class MigrationManager:
    """
    Migration Manager - Tracks applied versions and migration history

    Pattern: History in the _migrations table, version mirrored in PRAGMA user_version
    Lifetime: Bound to one connection; the executor owns its transactions

    record_migration() never commits: it writes inside the transaction the
    executor opened for the unit, so the marker and the unit's changes
    commit or roll back together.
    """

    def __init__(self, conn: sqlite3.Connection):
        """
        Initialize Migration Manager.

        Args:
            conn: Open connection to the store
        """
        self.conn = conn

    def ensure_table(self) -> None:
        """Create the history table if it does not exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS _migrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                version INTEGER NOT NULL UNIQUE,
                description TEXT NOT NULL,
                applied_at TEXT NOT NULL,
                duration_ms INTEGER,
                metadata TEXT  -- JSON
            )
        """)

    def _table_exists(self) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = '_migrations'"
        ).fetchone()
        return row is not None

    def get_schema_version(self) -> int:
        """
        Get the highest applied version.

        Returns:
            Current schema version (0 if nothing was applied yet)
        """
        if not self._table_exists():
            return 0
        row = self.conn.execute("SELECT MAX(version) FROM _migrations").fetchone()
        return row[0] or 0

    def record_migration(self,
                         version: int,
                         description: str,
                         duration_ms: Optional[int] = None,
                         metadata: Optional[Dict[str, Any]] = None) -> int:
        """
        Record a successfully applied unit inside the caller's transaction.

        Args:
            version: Unit version number
            description: Human-readable description
            duration_ms: Optional execution time in milliseconds
            metadata: Optional metadata returned by the unit

        Returns:
            record_id: ID of the created history row

        Raises:
            sqlite3.IntegrityError: If the version is already recorded
        """
        cursor = self.conn.execute("""
            INSERT INTO _migrations (version, description, applied_at, duration_ms, metadata)
            VALUES (?, ?, ?, ?, ?)
        """, (
            version,
            description,
            datetime.now(timezone.utc).isoformat(),
            duration_ms,
            json.dumps(metadata, sort_keys=True) if metadata else None
        ))
        # PRAGMA user_version doesn't support parameterized queries
        self.conn.execute(f"PRAGMA user_version = {int(version)}")
        return cursor.lastrowid

    def get_migration_record(self, version: int) -> Optional[MigrationRecord]:
        """Retrieve a history record by version, or None."""
        if not self._table_exists():
            return None
        row = self.conn.execute(_SELECT_RECORD + " WHERE version = ?", (version,)).fetchone()
        return MigrationRecord.from_row(row) if row else None

    def get_applied_migrations(self) -> List[MigrationRecord]:
        """All history records ordered by version ascending."""
        if not self._table_exists():
            return []
        rows = self.conn.execute(_SELECT_RECORD + " ORDER BY version ASC").fetchall()
        return [MigrationRecord.from_row(row) for row in rows]

    def get_last_migration(self) -> Optional[MigrationRecord]:
        """The most recently applied unit, or None."""
        if not self._table_exists():
            return None
        row = self.conn.execute(_SELECT_RECORD + " ORDER BY version DESC LIMIT 1").fetchone()
        return MigrationRecord.from_row(row) if row else None

    def is_migration_applied(self, version: int) -> bool:
        """True if the version is recorded."""
        return self.get_migration_record(version) is not None

    def get_migration_count(self) -> int:
        """Total number of applied units."""
        if not self._table_exists():
            return 0
        return self.conn.execute("SELECT COUNT(*) FROM _migrations").fetchone()[0]

    def verify_prefix(self) -> None:
        """
        Check that applied versions are exactly 1..N.

        Raises:
            OrderingViolation: If the history has a gap or does not start at 1
        """
        for expected, record in enumerate(self.get_applied_migrations(), start=1):
            if record.version != expected:
                raise OrderingViolation(
                    f"Applied versions are not a contiguous prefix: expected v{expected}, "
                    f"found v{record.version}",
                    version=record.version,
                )
