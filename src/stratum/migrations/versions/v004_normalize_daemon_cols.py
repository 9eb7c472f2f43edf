"""
Migration v004: Normalize daemon timestamps

Renames daemons.registered_at to created_at and adds updated_at, seeded
from last_seen. Daemons that were never seen fall back to created_at.
"""

import sqlite3
from typing import Any, Dict

from stratum.config import MigrateConfig
from stratum.migrations import schema
from stratum.migrations.migration_base import MigrationBase

# SQLite only accepts a constant default when adding a NOT NULL column;
# every existing row is overwritten right after.
EPOCH = "1970-01-01T00:00:00+00:00"


class Migration(MigrationBase):
    """Standardize daemon timestamp columns."""

    version = 4
    description = "Rename daemons.registered_at to created_at and add updated_at"

    def up(self, conn: sqlite3.Connection, config: MigrateConfig) -> Dict[str, Any]:
        renamed = schema.rename_column(conn, "daemons", "registered_at", "created_at")

        backfilled = 0
        if schema.add_column(conn, "daemons", "updated_at", f"TEXT NOT NULL DEFAULT '{EPOCH}'"):
            backfilled = conn.execute(
                "UPDATE daemons SET updated_at = COALESCE(last_seen, created_at)"
            ).rowcount

        return {"renamed": renamed, "updated_at_backfilled": backfilled}
