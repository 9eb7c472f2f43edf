"""
Migration v003: Discovery runs

Adds daemon capabilities, the discovery table for scheduled, ad-hoc and
historical discovery runs, and rewrites the discovery records embedded in
services, hosts, subnets and groups from the `discovery_type`-tagged format
to the `type`-tagged one.
"""

import sqlite3
from typing import Any, Dict

from stratum.config import MigrateConfig
from stratum.migrations import schema
from stratum.migrations.migration_base import MigrationBase
from stratum.migrations.reshape import reshape_tables


class Migration(MigrationBase):
    """Create the discovery table and reshape embedded discovery records."""

    version = 3
    description = "Add daemon capabilities and discovery table; reshape discovery metadata"

    def up(self, conn: sqlite3.Connection, config: MigrateConfig) -> Dict[str, Any]:
        schema.add_column(conn, "daemons", "capabilities", "TEXT DEFAULT '{}'")

        schema.create_table(conn, "discovery", [
            "id TEXT PRIMARY KEY",
            "network_id TEXT NOT NULL REFERENCES networks(id) ON DELETE CASCADE",
            "daemon_id TEXT NOT NULL REFERENCES daemons(id) ON DELETE CASCADE",
            "run_type TEXT NOT NULL CHECK (json_valid(run_type))",
            "discovery_type TEXT NOT NULL CHECK (json_valid(discovery_type))",
            "name TEXT NOT NULL",
            "created_at TEXT NOT NULL",
            "updated_at TEXT NOT NULL",
        ])
        schema.create_index(conn, "idx_discovery_daemon", "discovery", ["daemon_id"])
        schema.create_index(conn, "idx_discovery_network", "discovery", ["network_id"])

        return {"reshape": reshape_tables(conn, config.reshape)}
