"""
Migration v002: User authentication

Adds password_hash (NULL marks a legacy principal created before
authentication existed) and a username handle, then merges every legacy
principal into the oldest one. The unique index on lower(name) is created
only after the merge, since duplicated legacy names are exactly what the
merge removes.
"""

import logging
import sqlite3
from typing import Any, Dict

from stratum.config import MigrateConfig
from stratum.migrations import schema
from stratum.migrations.migration_base import MigrationBase
from stratum.migrations.reconcile import merge_legacy_principals

logger = logging.getLogger(__name__)


class Migration(MigrationBase):
    """Add credentials to users and merge legacy principals."""

    version = 2
    description = "Add password_hash and username to users; merge legacy users"

    def up(self, conn: sqlite3.Connection, config: MigrateConfig) -> Dict[str, Any]:
        # v006 drops users.name; a store without it is already past this unit
        if not schema.column_exists(conn, "users", "name"):
            logger.info("users.name is gone; store is already past v002")
            return {"skipped": True}

        schema.add_column(conn, "users", "password_hash", "TEXT")
        schema.add_column(conn, "users", "username", "TEXT")

        result = merge_legacy_principals(conn, config.reconcile)

        schema.create_index(conn, "idx_users_name_lower", "users", ["lower(name)"], unique=True)
        return {"reconcile": result.to_dict()}
