"""
Structural Step helpers

Guarded schema changes for migration units. Every helper checks the current
shape first, so invoking it against a store that already has the change is a
no-op. Identifiers are always quoted ("groups" is an SQLite keyword).

None of these helpers commit; they run inside the executor's transaction.
SQLite DDL is transactional, so a rolled-back unit leaves no partial columns
or indexes behind.
"""

import logging
import sqlite3
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


def quote(identifier: str) -> str:
    """Quote an SQL identifier."""
    return '"' + identifier.replace('"', '""') + '"'


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def column_names(conn: sqlite3.Connection, table: str) -> List[str]:
    """Column names of a table in declaration order ([] if the table is missing)."""
    cursor = conn.execute(f"PRAGMA table_info({quote(table)})")
    return [row[1] for row in cursor.fetchall()]


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return column in column_names(conn, table)


def column_not_null(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """True if the column exists and is declared NOT NULL."""
    for row in conn.execute(f"PRAGMA table_info({quote(table)})"):
        if row[1] == column:
            return bool(row[3])
    return False


def index_exists(conn: sqlite3.Connection, index: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?", (index,)
    ).fetchone()
    return row is not None


def create_table(conn: sqlite3.Connection, table: str, definitions: Sequence[str]) -> bool:
    """
    Create a table unless it exists.

    Args:
        table: Table name
        definitions: Column and table-constraint definitions

    Returns:
        True if the table was created
    """
    if table_exists(conn, table):
        return False
    body = ",\n    ".join(definitions)
    conn.execute(f"CREATE TABLE {quote(table)} (\n    {body}\n)")
    logger.debug("Created table %s", table)
    return True


def add_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> bool:
    """
    Add a column unless it exists.

    Args:
        definition: Type and constraints, e.g. "TEXT" or "TEXT NOT NULL DEFAULT ''".
                    SQLite only accepts constant defaults here.

    Returns:
        True if the column was added
    """
    if column_exists(conn, table, column):
        return False
    conn.execute(f"ALTER TABLE {quote(table)} ADD COLUMN {quote(column)} {definition}")
    logger.debug("Added column %s.%s", table, column)
    return True


def drop_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """
    Drop a column if it exists.

    Indexes covering the column must be dropped first.

    Returns:
        True if the column was dropped
    """
    if not column_exists(conn, table, column):
        return False
    conn.execute(f"ALTER TABLE {quote(table)} DROP COLUMN {quote(column)}")
    logger.debug("Dropped column %s.%s", table, column)
    return True


def rename_column(conn: sqlite3.Connection, table: str, old: str, new: str) -> bool:
    """
    Rename a column when the old name exists and the new one does not.

    Returns:
        True if the column was renamed
    """
    columns = column_names(conn, table)
    if old not in columns or new in columns:
        return False
    conn.execute(f"ALTER TABLE {quote(table)} RENAME COLUMN {quote(old)} TO {quote(new)}")
    logger.debug("Renamed column %s.%s to %s", table, old, new)
    return True


def create_index(conn: sqlite3.Connection,
                 index: str,
                 table: str,
                 expressions: Sequence[str],
                 unique: bool = False,
                 where: Optional[str] = None) -> bool:
    """
    Create an index unless one with the same name exists.

    Args:
        expressions: Indexed columns or expressions, e.g. ["lower(email)"]
        unique: Create a UNIQUE index
        where: Predicate for a partial index

    Returns:
        True if the index was created

    Raises:
        sqlite3.IntegrityError: If existing rows violate a unique index
    """
    if index_exists(conn, index):
        return False
    kind = "UNIQUE INDEX" if unique else "INDEX"
    sql = f"CREATE {kind} {quote(index)} ON {quote(table)} ({', '.join(expressions)})"
    if where:
        sql += f" WHERE {where}"
    conn.execute(sql)
    logger.debug("Created index %s on %s", index, table)
    return True


def drop_index(conn: sqlite3.Connection, index: str) -> bool:
    """
    Drop an index if it exists.

    Returns:
        True if the index was dropped
    """
    if not index_exists(conn, index):
        return False
    conn.execute(f"DROP INDEX {quote(index)}")
    logger.debug("Dropped index %s", index)
    return True


def rebuild_table(conn: sqlite3.Connection, table: str, definitions: Sequence[str]) -> List[str]:
    """
    Rebuild a table with a new shape, keeping its rows.

    SQLite cannot add NOT NULL or drop constrained columns in place, so the
    table is recreated under a temporary name, the columns both shapes share
    are copied across, the old table is dropped and the new one renamed.
    Indexes on the old table are dropped with it; the caller recreates the
    ones it still needs.

    Must run with foreign key enforcement off (see
    MigrationBase.disable_foreign_keys), otherwise dropping the old table
    cascades into every referencing table.

    Args:
        table: Table to rebuild
        definitions: Column and table-constraint definitions of the new shape

    Returns:
        The columns that were copied

    Raises:
        sqlite3.IntegrityError: If existing rows violate the new shape
    """
    temp = f"{table}__rebuild"
    conn.execute(f"DROP TABLE IF EXISTS {quote(temp)}")
    create_table(conn, temp, definitions)

    old_columns = set(column_names(conn, table))
    shared = [c for c in column_names(conn, temp) if c in old_columns]
    cols = ", ".join(quote(c) for c in shared)

    conn.execute(f"INSERT INTO {quote(temp)} ({cols}) SELECT {cols} FROM {quote(table)}")
    conn.execute(f"DROP TABLE {quote(table)}")
    conn.execute(f"ALTER TABLE {quote(temp)} RENAME TO {quote(table)}")
    logger.debug("Rebuilt table %s keeping columns %s", table, shared)
    return shared
