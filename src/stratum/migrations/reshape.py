"""
Structured-Payload Reshaper - embedded discovery records

services, hosts, subnets and groups each carry a JSON `source` column whose
`metadata` list holds one record per discovery that saw the entity. The
legacy records were tagged with `discovery_type`; the current format is
tagged with `type` and has a per-variant field set:

    legacy                                         current
    {discovery_type: SelfReport, host_id?, ...} -> {type: SelfReport, host_id, daemon_id, date}
    {discovery_type: Network, ...}              -> {type: Network, subnet_ids, daemon_id, date}
    {discovery_type: Docker, host_id, ...}      -> {type: Docker, host_id, daemon_id, date}

Records already tagged with `type`, and records matching neither shape, pass
through untouched. Rows whose `source` is not valid JSON are never rewritten.

Each table is rewritten by a single UPDATE that calls a registered SQL
function, so the rewrite commits or rolls back with the unit.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from stratum.config import ReshapeConfig

from . import schema

logger = logging.getLogger(__name__)

LEGACY_TAG = "discovery_type"
CURRENT_TAG = "type"


@dataclass(frozen=True)
class SelfReport:
    host_id: Any
    daemon_id: Any
    date: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "SelfReport", "host_id": self.host_id, "daemon_id": self.daemon_id, "date": self.date}


@dataclass(frozen=True)
class Network:
    subnet_ids: Optional[List[Any]]
    daemon_id: Any
    date: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "Network", "subnet_ids": self.subnet_ids, "daemon_id": self.daemon_id, "date": self.date}


@dataclass(frozen=True)
class Docker:
    host_id: Any
    daemon_id: Any
    date: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "Docker", "host_id": self.host_id, "daemon_id": self.daemon_id, "date": self.date}


@dataclass(frozen=True)
class Passthrough:
    """A record that is already current, or that no known shape matches."""
    raw: Any

    def to_dict(self) -> Any:
        return self.raw


DiscoveryRecord = Union[SelfReport, Network, Docker, Passthrough]


def parse_record(record: Any, config: ReshapeConfig) -> DiscoveryRecord:
    """
    Classify one embedded record.

    The legacy tag wins over the current one when a record carries both.
    """
    if not isinstance(record, dict):
        return Passthrough(record)

    tag = record.get(LEGACY_TAG)
    if tag == "SelfReport":
        host_id = record.get("host_id")
        return SelfReport(
            host_id=config.nil_host_id if host_id is None else host_id,
            daemon_id=record.get("daemon_id"),
            date=record.get("date"),
        )
    if tag == "Network":
        subnet_ids = record.get("subnet_ids") if config.network_subnet_ids == "preserve" else None
        return Network(subnet_ids=subnet_ids, daemon_id=record.get("daemon_id"), date=record.get("date"))
    if tag == "Docker":
        return Docker(host_id=record.get("host_id"), daemon_id=record.get("daemon_id"), date=record.get("date"))
    return Passthrough(record)


def has_legacy_record(metadata: Any) -> bool:
    if not isinstance(metadata, list):
        return False
    return any(isinstance(r, dict) and r.get(LEGACY_TAG) is not None for r in metadata)


@dataclass
class ReshapeStats:
    """Counters collected while reshaping one table."""
    rows: int = 0
    records: int = 0
    dropped_subnet_links: int = 0
    by_variant: Dict[str, int] = field(default_factory=dict)

    def merge(self, other: "ReshapeStats") -> None:
        self.rows += other.rows
        self.records += other.records
        self.dropped_subnet_links += other.dropped_subnet_links
        for name, count in other.by_variant.items():
            self.by_variant[name] = self.by_variant.get(name, 0) + count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": self.rows,
            "records": self.records,
            "dropped_subnet_links": self.dropped_subnet_links,
            "by_variant": dict(self.by_variant),
        }


def reshape_metadata(metadata: List[Any], config: ReshapeConfig,
                     stats: Optional[ReshapeStats] = None) -> List[Any]:
    """Rewrite a metadata list into the current format."""
    reshaped = []
    for record in metadata:
        parsed = parse_record(record, config)
        if stats is not None and not isinstance(parsed, Passthrough):
            stats.records += 1
            name = type(parsed).__name__
            stats.by_variant[name] = stats.by_variant.get(name, 0) + 1
            if isinstance(parsed, Network) and parsed.subnet_ids is None and record.get("subnet_ids"):
                stats.dropped_subnet_links += 1
        reshaped.append(parsed.to_dict())
    return reshaped


def _load_source(source: Any) -> Tuple[bool, Any]:
    if not isinstance(source, str):
        return False, None
    try:
        return True, json.loads(source)
    except (ValueError, RecursionError):
        # Too deeply nested to decode counts as unparseable
        return False, None


def reshape_source(source: Any, config: ReshapeConfig, stats: Optional[ReshapeStats] = None) -> Any:
    """
    Rewrite a `source` JSON document, returning it unchanged when there is
    nothing to reshape or it cannot be parsed.
    """
    ok, data = _load_source(source)
    if not ok or not isinstance(data, dict) or not has_legacy_record(data.get("metadata")):
        return source

    row_stats = ReshapeStats()
    try:
        reshaped = reshape_metadata(data["metadata"], config, row_stats)
        # Only unrecognized legacy tags: keep the original text byte for byte
        if reshaped == data["metadata"]:
            return source
        data["metadata"] = reshaped
        result = json.dumps(data)
    except RecursionError:
        logger.warning("Leaving a source document unchanged: nested too deeply to re-encode")
        return source

    if stats is not None:
        stats.merge(row_stats)
        stats.rows += 1
    return result


def needs_reshape(source: Any) -> bool:
    ok, data = _load_source(source)
    return ok and isinstance(data, dict) and has_legacy_record(data.get("metadata"))


def reshape_table(conn: sqlite3.Connection, table: str, config: ReshapeConfig) -> Optional[ReshapeStats]:
    """
    Reshape every row of one table with a single UPDATE.

    Returns:
        ReshapeStats, or None if the table or its source column is missing
    """
    if not schema.column_exists(conn, table, "source"):
        logger.info("Skipping %s: no source column", table)
        return None

    stats = ReshapeStats()

    # The callbacks must never raise: sqlite3 turns that into an
    # OperationalError that would abort the unit.
    conn.create_function("stratum_needs_reshape", 1,
                         lambda s: 1 if needs_reshape(s) else 0, deterministic=True)
    conn.create_function("stratum_reshape_source", 1,
                         lambda s: reshape_source(s, config, stats))
    conn.execute(
        f"UPDATE {schema.quote(table)} SET source = stratum_reshape_source(source) "
        f"WHERE stratum_needs_reshape(source)"
    )

    logger.info("Reshaped %d rows (%d records) in %s", stats.rows, stats.records, table)
    if stats.dropped_subnet_links:
        logger.warning(
            "Dropped subnet associations from %d Network records in %s "
            "(reshape.network_subnet_ids=reset)", stats.dropped_subnet_links, table,
        )
    return stats


def reshape_tables(conn: sqlite3.Connection, config: ReshapeConfig) -> Dict[str, Dict[str, Any]]:
    """
    Reshape every configured table independently.

    Returns:
        Per-table stats for the tables that were present
    """
    results = {}
    for table in config.tables:
        stats = reshape_table(conn, table, config)
        if stats is not None:
            results[table] = stats.to_dict()
    return results
