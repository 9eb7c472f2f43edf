"""
Migration v005: API keys

Moves daemon API keys into their own api_keys table, scoped to the network,
so a network can hold several keys with names, expiry and an enabled flag.
Each daemon with a key yields one api_keys row that keeps the daemon's
created_at and uses its last_seen as last_used. The old column and its
index are dropped afterwards.

Two daemons sharing one key violate the unique constraint on api_keys.key
and fail the unit.
"""

import logging
import sqlite3
import uuid
from typing import Any, Dict

from stratum.config import MigrateConfig
from stratum.migrations import schema
from stratum.migrations.migration_base import MigrationBase

logger = logging.getLogger(__name__)

DEFAULT_KEY_NAME = "Api Key"


class Migration(MigrationBase):
    """Externalize daemon API keys."""

    version = 5
    description = "Move daemon api_key into api_keys table"

    def up(self, conn: sqlite3.Connection, config: MigrateConfig) -> Dict[str, Any]:
        schema.create_table(conn, "api_keys", [
            "id TEXT PRIMARY KEY",
            "key TEXT NOT NULL UNIQUE",
            "network_id TEXT NOT NULL REFERENCES networks(id) ON DELETE CASCADE",
            "name TEXT NOT NULL",
            "created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP",
            "updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP",
            "last_used TEXT",
            "expires_at TEXT",
            "is_enabled INTEGER NOT NULL DEFAULT 1",
        ])
        schema.create_index(conn, "idx_api_keys_key", "api_keys", ["key"])
        schema.create_index(conn, "idx_api_keys_network", "api_keys", ["network_id"])

        migrated = 0
        if schema.column_exists(conn, "daemons", "api_key"):
            created_col = "created_at" if schema.column_exists(conn, "daemons", "created_at") else "registered_at"
            rows = conn.execute(f"""
                SELECT id, network_id, api_key, {created_col}, last_seen
                FROM daemons
                WHERE api_key IS NOT NULL
                ORDER BY {created_col}, id
            """).fetchall()

            conn.executemany("""
                INSERT INTO api_keys (id, key, network_id, name, created_at, updated_at, last_used, is_enabled)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1)
            """, [
                (str(uuid.uuid4()), api_key, network_id, DEFAULT_KEY_NAME, created_at, created_at, last_seen)
                for _daemon_id, network_id, api_key, created_at, last_seen in rows
            ])
            migrated = len(rows)
            for daemon_id, *_ in rows:
                logger.debug("Migrated daemon %s api_key to api_keys", daemon_id)

        schema.drop_index(conn, "idx_daemons_api_key_hash")
        schema.drop_column(conn, "daemons", "api_key")

        logger.info("Moved %d daemon API keys into api_keys", migrated)
        return {"api_keys_migrated": migrated}
