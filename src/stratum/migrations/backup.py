"""
Snapshot Manager for stratum stores

Takes a consistent copy of the store before pending units run, so an
operator can get back to the pre-migration state even after units have
committed. A failing unit never needs a snapshot: its own transaction
rolls back.

Features:
- Timestamped snapshots with a JSON metadata sidecar
- SQLite online backup API (consistent even in WAL mode)
- Retention: keep the newest N snapshots
- Restore and verify
"""

import json
import logging
import shutil
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .manager import MigrationManager

logger = logging.getLogger(__name__)


@dataclass
class BackupInfo:
    """Information about a store snapshot."""
    path: Path
    original_db: Path
    created_at: datetime
    size_bytes: int
    schema_version: int
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "path": str(self.path),
            "original_db": str(self.original_db),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "size_bytes": self.size_bytes,
            "schema_version": self.schema_version,
            "metadata": self.metadata or {}
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupInfo':
        """Create BackupInfo from dictionary."""
        return cls(
            path=Path(data["path"]),
            original_db=Path(data["original_db"]),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None,
            size_bytes=data["size_bytes"],
            schema_version=data["schema_version"],
            metadata=data.get("metadata")
        )


class BackupManager:
    """
    Backup Manager - pre-migration snapshots of the store

    Pattern: Timestamped snapshot files with metadata sidecars
    Lifetime: Snapshots persist until pruned

    Example:
        manager = BackupManager(db_path)
        info = manager.create_backup(metadata={"pending": [5, 6]})
        # ... units fail in production, operator decides to go back ...
        manager.restore_backup(info.path)
    """

    # Snapshot filename pattern: {db_name}_backup_{timestamp}.db
    BACKUP_SUFFIX = "_backup_"
    METADATA_SUFFIX = ".meta.json"

    def __init__(self, db_path: Path, backup_dir: Optional[Path] = None):
        """
        Initialize Backup Manager.

        Args:
            db_path: Path to the SQLite store
            backup_dir: Directory for snapshots (default: {db_path.parent}/backups)
        """
        self.db_path = Path(db_path)
        self.backup_dir = Path(backup_dir) if backup_dir is not None else self.db_path.parent / "backups"

    def create_backup(self, metadata: Optional[Dict[str, Any]] = None) -> BackupInfo:
        """
        Create a timestamped snapshot using the SQLite backup API.

        Args:
            metadata: Optional metadata stored in the sidecar

        Returns:
            BackupInfo for the new snapshot

        Raises:
            FileNotFoundError: If the store does not exist
            sqlite3.Error: If the backup fails
        """
        if not self.db_path.exists():
            raise FileNotFoundError(f"Database file not found: {self.db_path}")

        self.backup_dir.mkdir(parents=True, exist_ok=True)

        # Microseconds keep back-to-back snapshots from sharing a name
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_path = self.backup_dir / f"{self.db_path.stem}{self.BACKUP_SUFFIX}{timestamp}.db"

        source = sqlite3.connect(self.db_path)
        dest = sqlite3.connect(backup_path)
        try:
            source.backup(dest)
            schema_version = MigrationManager(source).get_schema_version()
        finally:
            source.close()
            dest.close()

        backup_info = BackupInfo(
            path=backup_path,
            original_db=self.db_path,
            created_at=datetime.now(),
            size_bytes=backup_path.stat().st_size,
            schema_version=schema_version,
            metadata=metadata
        )
        self._save_metadata(backup_info)

        logger.info("Created snapshot %s at v%d", backup_path, schema_version)
        return backup_info

    def _metadata_path(self, backup_path: Path) -> Path:
        return backup_path.with_suffix(backup_path.suffix + self.METADATA_SUFFIX)

    def _save_metadata(self, backup_info: BackupInfo) -> None:
        with open(self._metadata_path(backup_info.path), 'w') as f:
            json.dump(backup_info.to_dict(), f, indent=2)

    def _load_metadata(self, backup_path: Path) -> Optional[BackupInfo]:
        metadata_path = self._metadata_path(backup_path)
        if not metadata_path.exists():
            return None

        try:
            with open(metadata_path, 'r') as f:
                return BackupInfo.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning("Ignoring unreadable snapshot metadata %s: %s", metadata_path, e)
            return None

    def _info_from_file(self, backup_path: Path) -> BackupInfo:
        try:
            conn = sqlite3.connect(backup_path)
            try:
                schema_version = MigrationManager(conn).get_schema_version()
            finally:
                conn.close()
        except sqlite3.Error:
            schema_version = -1  # Unknown

        stat = backup_path.stat()
        return BackupInfo(
            path=backup_path,
            original_db=self.db_path,
            created_at=datetime.fromtimestamp(stat.st_mtime),
            size_bytes=stat.st_size,
            schema_version=schema_version,
        )

    def restore_backup(self, backup_path: Path) -> None:
        """
        Replace the store with a snapshot.

        WARNING: This overwrites the store. No connection may be open on it.

        Raises:
            FileNotFoundError: If the snapshot does not exist
        """
        backup_path = Path(backup_path)
        if not backup_path.exists():
            raise FileNotFoundError(f"Backup file not found: {backup_path}")

        shutil.copy2(backup_path, self.db_path)

        # Stale WAL files would be replayed over the restored copy
        for suffix in ("-wal", "-shm"):
            stale = self.db_path.with_suffix(self.db_path.suffix + suffix)
            if stale.exists():
                stale.unlink()

        logger.info("Restored %s from %s", self.db_path, backup_path)

    def list_backups(self) -> List[BackupInfo]:
        """All snapshots of this store, newest first."""
        if not self.backup_dir.exists():
            return []

        backups = []
        for backup_file in self.backup_dir.glob(f"{self.db_path.stem}{self.BACKUP_SUFFIX}*.db"):
            backups.append(self._load_metadata(backup_file) or self._info_from_file(backup_file))

        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    def get_latest_backup(self) -> Optional[BackupInfo]:
        backups = self.list_backups()
        return backups[0] if backups else None

    def cleanup_old_backups(self, keep_count: int = 5) -> int:
        """
        Remove old snapshots, keeping the newest keep_count.

        Returns:
            Number of snapshots deleted
        """
        if keep_count < 1:
            raise ValueError(f"keep_count must be >= 1, got {keep_count}")

        deleted_count = 0
        for backup_info in self.list_backups()[keep_count:]:
            backup_info.path.unlink()
            metadata_path = self._metadata_path(backup_info.path)
            if metadata_path.exists():
                metadata_path.unlink()
            deleted_count += 1

        if deleted_count:
            logger.info("Pruned %d old snapshots of %s", deleted_count, self.db_path)
        return deleted_count

    def verify_backup(self, backup_path: Path) -> bool:
        """True if the snapshot is a readable SQLite database that passes integrity_check."""
        backup_path = Path(backup_path)
        if not backup_path.exists():
            return False

        try:
            conn = sqlite3.connect(backup_path)
            try:
                result = conn.execute("PRAGMA integrity_check").fetchone()
                conn.execute("SELECT name FROM sqlite_master LIMIT 1")
            finally:
                conn.close()
        except sqlite3.Error:
            return False
        return result is not None and result[0] == "ok"
