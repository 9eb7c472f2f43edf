"""Pytest fixtures for stratum migration tests"""
import json

import pytest

from stratum.config import MigrateConfig
from stratum.migrations import connect
from stratum.migrations.versions.v001_baseline import Migration as Baseline

DAY1 = "2024-01-01T00:00:00+00:00"
DAY2 = "2024-01-02T00:00:00+00:00"
DAY3 = "2024-01-03T00:00:00+00:00"


@pytest.fixture
def config():
    """Default configuration."""
    return MigrateConfig()


@pytest.fixture
def db_path(tmp_path):
    """Path of a store that does not exist yet."""
    return tmp_path / "store.sqlite"


@pytest.fixture
def conn(db_path):
    """Connection to an empty store, opened the way the executor expects."""
    connection = connect(db_path)
    yield connection
    connection.close()


@pytest.fixture
def baseline_conn(conn, config):
    """Store in the pre-authentication shape, created by an earlier server
    release: baseline tables present, no migration history."""
    Baseline().up(conn, config)
    return conn


@pytest.fixture
def legacy_store(baseline_conn):
    """Pre-authentication store with two legacy principals named Alice.

    - u-a (day 1) owns network n-1; u-b (day 2) owns network n-2
    - daemon d-1 on n-1 carries api_key 'secret-1'
    - service s-1 embeds a legacy Docker discovery record
    """
    conn = baseline_conn
    conn.executemany(
        "INSERT INTO users (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
        [("u-a", "Alice", DAY1, DAY1), ("u-b", "Alice", DAY2, DAY2)],
    )
    conn.executemany(
        "INSERT INTO networks (id, name, user_id, is_default, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        [("n-1", "Home", "u-a", 1, DAY1, DAY1), ("n-2", "Lab", "u-b", 1, DAY2, DAY2)],
    )
    conn.execute(
        "INSERT INTO hosts (id, network_id, name, source, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        ("h1", "n-1", "nas", json.dumps({"metadata": [
            {"discovery_type": "SelfReport", "daemon_id": "d-1", "date": DAY1},
        ]}), DAY1, DAY1),
    )
    conn.execute(
        "INSERT INTO daemons (id, network_id, host_id, ip, port, api_key, registered_at, last_seen) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        ("d-1", "n-1", "h1", "10.0.0.2", 60073, "secret-1", DAY1, DAY3),
    )
    conn.execute(
        "INSERT INTO services (id, network_id, host_id, name, source, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        ("s-1", "n-1", "h1", "Plex", json.dumps({"type": "Discovery", "metadata": [
            {"discovery_type": "Docker", "host_id": "h1", "daemon_id": "d1", "date": "2024-01-01"},
        ]}), DAY1, DAY1),
    )
    return conn


@pytest.fixture
def auth_users(baseline_conn):
    """Baseline store with the v002 credential columns and no rows."""
    conn = baseline_conn
    conn.execute("ALTER TABLE users ADD COLUMN password_hash TEXT")
    conn.execute("ALTER TABLE users ADD COLUMN username TEXT")
    return conn


def source_metadata(conn, table, row_id):
    """The decoded metadata list embedded in a row's source column."""
    (source,) = conn.execute(f'SELECT source FROM "{table}" WHERE id = ?', (row_id,)).fetchone()
    return json.loads(source)["metadata"]


@pytest.fixture
def read_metadata():
    return source_metadata
