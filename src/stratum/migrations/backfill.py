"""
Identity Backfill - derive a unique email for every principal

Principals predating email login only carry a legacy handle (username)
and/or a display name. Each principal without an email gets one derived
from those, and collisions are resolved so the case-insensitive unique index
created afterwards never fails.

Derivation (first non-empty of username, name):
- already looks like an email (contains "@")  -> used verbatim
- otherwise strip leading/trailing non-alphanumerics and append @<domain>
- no legacy value at all                      -> fallback address

Collisions (case-insensitive): the oldest principal keeps the candidate,
the k-th oldest gets k inserted before the "@" (alice@ -> alice2@), counting
further up while that value is already taken.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from stratum.config import BackfillConfig

from . import schema

logger = logging.getLogger(__name__)

_EDGE_JUNK = re.compile(r"^[^a-zA-Z0-9]+|[^a-zA-Z0-9]+$")


@dataclass
class Candidate:
    """A principal awaiting an email, with its derived candidate value."""
    id: str
    created_at: Optional[str]
    value: str

    @property
    def key(self) -> str:
        return self.value.lower()

    def sort_key(self) -> Tuple[bool, str, str]:
        # Missing created_at sorts last
        return (self.created_at is None, self.created_at or "", self.id)


@dataclass
class BackfillResult:
    """Outcome of an email backfill."""
    assigned: int = 0
    decorated: int = 0
    fallback: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"assigned": self.assigned, "decorated": self.decorated, "fallback": self.fallback}


def derive_candidate(username: Optional[str], name: Optional[str], config: BackfillConfig) -> str:
    """Derive the undecorated email candidate from legacy attributes."""
    for value in (username, name):
        if not value:
            continue
        if "@" in value:
            return value
        local = _EDGE_JUNK.sub("", value).strip("_")
        return f"{local or config.fallback_local_part}@{config.email_domain}"
    return config.fallback_email


def decorate(value: str, marker: int) -> str:
    """Insert an integer marker before the first "@"."""
    local, at, domain = value.partition("@")
    return f"{local}{marker}{at}{domain}"


def resolve_collisions(candidates: Iterable[Candidate], taken: Set[str]) -> Dict[str, str]:
    """
    Assign final values so that no two collide case-insensitively.

    Args:
        candidates: Principals with their derived candidates
        taken: Lower-cased emails already present in the store; extended in place

    Returns:
        Mapping of principal id to final email
    """
    groups: Dict[str, List[Candidate]] = {}
    for candidate in candidates:
        groups.setdefault(candidate.key, []).append(candidate)
    for members in groups.values():
        members.sort(key=Candidate.sort_key)

    assigned: Dict[str, str] = {}

    def claim(candidate: Candidate, marker: int) -> None:
        value = candidate.value if marker == 1 else decorate(candidate.value, marker)
        while value.lower() in taken:
            marker += 1
            value = decorate(candidate.value, marker)
        taken.add(value.lower())
        assigned[candidate.id] = value

    # Oldest members first, so every undecorated candidate is reserved before
    # any decorated value can claim it.
    ordered_keys = sorted(groups)
    for key in ordered_keys:
        claim(groups[key][0], 1)
    for key in ordered_keys:
        for rank, candidate in enumerate(groups[key][1:], start=2):
            claim(candidate, rank)

    return assigned


def backfill_emails(conn: sqlite3.Connection, config: BackfillConfig) -> BackfillResult:
    """
    Populate users.email for every principal that lacks one.

    Must run before NOT NULL and the unique index on lower(email) are
    imposed. Principals that already have an email keep it and reserve it.

    Args:
        conn: Connection inside the unit's transaction
        config: Domain, fallback and batch size

    Returns:
        BackfillResult with assignment counts
    """
    columns = schema.column_names(conn, "users")
    username_expr = "username" if "username" in columns else "NULL"
    name_expr = "name" if "name" in columns else "NULL"

    rows = conn.execute(
        f"SELECT id, created_at, {username_expr}, {name_expr} FROM users WHERE email IS NULL"
    ).fetchall()
    if not rows:
        logger.info("Every principal already has an email; nothing to backfill")
        return BackfillResult()

    taken = {row[0].lower() for row in conn.execute("SELECT email FROM users WHERE email IS NOT NULL")}

    result = BackfillResult()
    candidates = []
    for user_id, created_at, username, name in rows:
        value = derive_candidate(username, name, config)
        if not username and not name:
            result.fallback += 1
        candidates.append(Candidate(id=user_id, created_at=created_at, value=value))

    by_id = {c.id: c for c in candidates}
    assigned = resolve_collisions(candidates, taken)
    result.assigned = len(assigned)
    result.decorated = sum(1 for user_id, email in assigned.items() if email != by_id[user_id].value)

    updates = [(email, user_id) for user_id, email in sorted(assigned.items())]
    for start in range(0, len(updates), config.batch_size):
        conn.executemany("UPDATE users SET email = ? WHERE id = ?", updates[start:start + config.batch_size])

    logger.info(
        "Backfilled %d emails (%d decorated for uniqueness, %d fallback)",
        result.assigned, result.decorated, result.fallback,
    )
    return result
