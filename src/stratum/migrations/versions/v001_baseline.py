"""
Migration v001: Baseline schema

The shape of the store before authentication existed: principals without
credentials, networks owned by principals, daemons carrying their own API
key, and the discovered entities with their JSON `source` payloads.

Stores created by earlier server releases already have these tables; every
statement is guarded, so for them this unit only records the version.
"""

import sqlite3

from stratum.config import MigrateConfig
from stratum.migrations import schema
from stratum.migrations.migration_base import MigrationBase

TIMESTAMPS = ["created_at TEXT NOT NULL", "updated_at TEXT NOT NULL"]

NETWORK_FK = "network_id TEXT NOT NULL REFERENCES networks(id) ON DELETE CASCADE"


class Migration(MigrationBase):
    """Create the pre-authentication schema."""

    version = 1
    description = "Baseline schema: users, networks, daemons and discovered entities"

    def up(self, conn: sqlite3.Connection, config: MigrateConfig) -> None:
        schema.create_table(conn, "users", [
            "id TEXT PRIMARY KEY",
            "name TEXT",
            *TIMESTAMPS,
        ])
        schema.create_table(conn, "networks", [
            "id TEXT PRIMARY KEY",
            "name TEXT NOT NULL",
            "user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE",
            "is_default INTEGER NOT NULL DEFAULT 0",
            *TIMESTAMPS,
        ])
        schema.create_index(conn, "idx_networks_user", "networks", ["user_id"])

        schema.create_table(conn, "hosts", [
            "id TEXT PRIMARY KEY",
            NETWORK_FK,
            "name TEXT NOT NULL",
            "source TEXT NOT NULL DEFAULT '{}'",
            *TIMESTAMPS,
        ])
        schema.create_table(conn, "daemons", [
            "id TEXT PRIMARY KEY",
            NETWORK_FK,
            "host_id TEXT",
            "ip TEXT",
            "port INTEGER",
            "api_key TEXT",
            "registered_at TEXT NOT NULL",
            "last_seen TEXT",
        ])
        if schema.column_exists(conn, "daemons", "api_key"):
            schema.create_index(conn, "idx_daemons_api_key_hash", "daemons", ["api_key"])

        schema.create_table(conn, "services", [
            "id TEXT PRIMARY KEY",
            NETWORK_FK,
            "host_id TEXT REFERENCES hosts(id) ON DELETE CASCADE",
            "name TEXT NOT NULL",
            "source TEXT NOT NULL DEFAULT '{}'",
            *TIMESTAMPS,
        ])
        schema.create_table(conn, "subnets", [
            "id TEXT PRIMARY KEY",
            NETWORK_FK,
            "cidr TEXT",
            "name TEXT NOT NULL",
            "source TEXT NOT NULL DEFAULT '{}'",
            *TIMESTAMPS,
        ])
        schema.create_table(conn, "groups", [
            "id TEXT PRIMARY KEY",
            NETWORK_FK,
            "name TEXT NOT NULL",
            "source TEXT NOT NULL DEFAULT '{}'",
            *TIMESTAMPS,
        ])
