"""
Migration v006: OIDC linkage and email login

Links principals to an external identity (provider, subject), unique per
provider only when both are set, and switches login from username to email:

1. add the OIDC columns and email
2. backfill email for every principal (see stratum.migrations.backfill)
3. rebuild users with email NOT NULL and without name/username
4. create the case-insensitive unique index on email and the OIDC index

The constraints are created strictly after the backfill; creating them
earlier would reject the very rows the backfill is about to fix.
"""

import sqlite3
from typing import Any, Dict

from stratum.config import MigrateConfig
from stratum.migrations import schema
from stratum.migrations.backfill import backfill_emails
from stratum.migrations.migration_base import MigrationBase

USERS = [
    "id TEXT PRIMARY KEY",
    "email TEXT NOT NULL",
    "password_hash TEXT",
    "oidc_provider TEXT",
    "oidc_subject TEXT",
    "oidc_linked_at TEXT",
    "created_at TEXT NOT NULL",
    "updated_at TEXT NOT NULL",
]

RETIRED_COLUMNS = ("name", "username")


class Migration(MigrationBase):
    """Add OIDC linkage and replace username login with email."""

    version = 6
    description = "Add OIDC provider linkage; replace username with unique email"
    disable_foreign_keys = True

    def up(self, conn: sqlite3.Connection, config: MigrateConfig) -> Dict[str, Any]:
        schema.add_column(conn, "users", "oidc_provider", "TEXT")
        schema.add_column(conn, "users", "oidc_subject", "TEXT")
        schema.add_column(conn, "users", "oidc_linked_at", "TEXT")
        schema.add_column(conn, "users", "email", "TEXT")

        result = backfill_emails(conn, config.backfill)

        schema.drop_index(conn, "idx_users_name_lower")

        columns = schema.column_names(conn, "users")
        rebuilt = (
            any(c in columns for c in RETIRED_COLUMNS)
            or not schema.column_not_null(conn, "users", "email")
        )
        if rebuilt:
            schema.rebuild_table(conn, "users", USERS)

        schema.create_index(conn, "idx_users_email_lower", "users", ["lower(email)"], unique=True)
        schema.create_index(
            conn, "idx_users_oidc_provider_subject", "users", ["oidc_provider", "oidc_subject"],
            unique=True, where="oidc_provider IS NOT NULL AND oidc_subject IS NOT NULL",
        )
        return {"backfill": result.to_dict(), "users_rebuilt": rebuilt}
