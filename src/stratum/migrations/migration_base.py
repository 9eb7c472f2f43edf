"""
Migration Base Class

Abstract base class for migration units. All units inherit from this class
and implement up().

Pattern:
- Each unit has a unique version number
- up() applies the unit forward inside the executor's transaction
- Units are applied in version order, each exactly once per store
- There is no down(): units are irreversible, recovery is by snapshot
"""

import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from stratum.config import MigrateConfig


class MigrationBase(ABC):
    """
    Abstract base class for migration units.

    All units must define:
    - version: Unique integer version number (e.g., 1, 2, 3)
    - description: Human-readable description of the unit
    - up(): Method to apply the unit

    up() must tolerate a store that already has some or all of its effects
    (guard structural changes with existence checks, data rewrites with
    shape checks). A store can start at any historical schema version.

    Example:
        class AddTagsTable(MigrationBase):
            version = 7
            description = "Add tags table"

            def up(self, conn, config):
                schema.create_table(conn, "tags", ["id TEXT PRIMARY KEY", "name TEXT NOT NULL"])
    """

    # Subclasses must define these
    version: int
    description: str

    # Units that rebuild tables need foreign key enforcement off for the
    # duration of the unit; the executor re-checks every key before commit.
    disable_foreign_keys: bool = False

    def __init__(self):
        """Initialize migration and validate required attributes."""
        if not hasattr(self, 'version') or not isinstance(self.version, int):
            raise ValueError(
                f"{self.__class__.__name__} must define 'version' as an integer"
            )
        if not hasattr(self, 'description') or not isinstance(self.description, str):
            raise ValueError(
                f"{self.__class__.__name__} must define 'description' as a string"
            )
        if self.version < 1:
            raise ValueError(
                f"Migration version must be >= 1, got {self.version}"
            )

    @abstractmethod
    def up(self, conn: sqlite3.Connection, config: MigrateConfig) -> Optional[Dict[str, Any]]:
        """
        Apply the unit forward.

        Args:
            conn: Connection with an open transaction owned by the executor.
                  Never commit, roll back or call executescript() here.
            config: Active configuration

        Returns:
            Optional metadata recorded with the applied version

        Raises:
            Exception: Any failure rolls the whole unit back.
        """
        pass

    def validate(self, conn: sqlite3.Connection) -> None:
        """
        Optional check before the unit's transaction is opened.

        Raises:
            Exception: If validation fails, the unit does not run.
        """
        pass

    @property
    def display_name(self) -> str:
        """Human-readable name for logs."""
        return f"v{self.version:03d} {self.description}"

    def __repr__(self) -> str:
        """String representation for logging."""
        return f"<Migration v{self.version}: {self.description}>"

    def __eq__(self, other) -> bool:
        """Compare migrations by version."""
        if not isinstance(other, MigrationBase):
            return False
        return self.version == other.version

    def __lt__(self, other) -> bool:
        """Order migrations by version."""
        if not isinstance(other, MigrationBase):
            return NotImplemented
        return self.version < other.version

    def __hash__(self) -> int:
        """Hash by version for use in sets/dicts."""
        return hash(self.version)
