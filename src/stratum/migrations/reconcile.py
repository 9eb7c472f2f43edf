"""
Data Reconciler - legacy principal merge

Principals created before authentication existed have no password_hash.
A store may hold several of them; after reconciliation exactly one (the
seed) remains and owns every network the others owned.

Ownership is always reassigned before the losing principals are deleted.
The delete's ON DELETE CASCADE only catches entities scoped directly to a
principal; networks never reach it because they were moved first.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from stratum.config import ReconcileConfig

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a legacy principal merge."""
    legacy_count: int
    seed_id: Optional[str] = None
    merged_ids: List[str] = field(default_factory=list)
    networks_reassigned: int = 0

    @property
    def merged(self) -> bool:
        return bool(self.merged_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "legacy_count": self.legacy_count,
            "seed_id": self.seed_id,
            "merged_ids": list(self.merged_ids),
            "networks_reassigned": self.networks_reassigned,
        }


def count_legacy_principals(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM users WHERE password_hash IS NULL").fetchone()[0]


def elect_seed(conn: sqlite3.Connection) -> Optional[tuple]:
    """
    The oldest legacy principal; ties on created_at go to the smallest id.

    Returns:
        (id, name) of the seed, or None when there are no legacy principals
    """
    return conn.execute("""
        SELECT id, name FROM users
        WHERE password_hash IS NULL
        ORDER BY created_at ASC, id ASC
        LIMIT 1
    """).fetchone()


def normalized_identity(name: Optional[str], config: ReconcileConfig) -> tuple:
    """
    Display name and handle for the seed.

    A missing display name, or one of display_placeholder_names, becomes the
    default display name. The handle is the seed's own name unless that is
    missing or one of placeholder_names, in which case it is the default
    handle. The two are decided independently, so a seed named "default"
    keeps its display name and gets the default handle.

    Returns:
        (display_name, handle)
    """
    if name is None or name in config.display_placeholder_names:
        display_name = config.default_display_name
    else:
        display_name = name
    if name is None or name in config.placeholder_names:
        handle = config.default_handle
    else:
        handle = name
    return display_name, handle


def merge_legacy_principals(conn: sqlite3.Connection, config: ReconcileConfig) -> ReconcileResult:
    """
    Merge all legacy principals into the seed.

    A store with at most one legacy principal is left untouched, which makes
    the merge safe to run again.

    Args:
        conn: Connection inside the unit's transaction
        config: Placeholder names and defaults for the seed

    Returns:
        ReconcileResult describing what was merged
    """
    legacy_count = count_legacy_principals(conn)
    if legacy_count <= 1:
        logger.info("Found %d legacy principals; nothing to merge", legacy_count)
        return ReconcileResult(legacy_count=legacy_count)

    seed_id, seed_name = elect_seed(conn)
    logger.info("Found %d legacy principals; merging into seed %s", legacy_count, seed_id)

    merged_ids = [row[0] for row in conn.execute(
        "SELECT id FROM users WHERE password_hash IS NULL AND id != ? ORDER BY created_at, id",
        (seed_id,),
    )]

    # Phase 1: reassign
    cursor = conn.execute("""
        UPDATE networks SET user_id = ?
        WHERE user_id IN (
            SELECT id FROM users WHERE password_hash IS NULL AND id != ?
        )
    """, (seed_id, seed_id))
    networks_reassigned = cursor.rowcount

    # Phase 2: delete
    conn.execute("DELETE FROM users WHERE password_hash IS NULL AND id != ?", (seed_id,))

    display_name, handle = normalized_identity(seed_name, config)
    conn.execute(
        "UPDATE users SET name = ?, username = ?, updated_at = ? WHERE id = ?",
        (display_name, handle, datetime.now(timezone.utc).isoformat(), seed_id),
    )

    logger.info(
        "Reassigned %d networks to seed %s and deleted %d legacy principals",
        networks_reassigned, seed_id, len(merged_ids),
    )
    return ReconcileResult(
        legacy_count=legacy_count,
        seed_id=seed_id,
        merged_ids=merged_ids,
        networks_reassigned=networks_reassigned,
    )
