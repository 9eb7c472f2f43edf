"""Tests for the shipped migration units"""
import sqlite3

import pytest

from stratum.errors import DataIntegrityViolation
from stratum.migrations import MigrationExecutor
from stratum.migrations import schema

DAY1 = "2024-01-01T00:00:00+00:00"
DAY2 = "2024-01-02T00:00:00+00:00"


@pytest.fixture
def executor(conn, config):
    return MigrationExecutor(conn, config=config)


def add_daemon(conn, daemon_id, api_key, last_seen=None, registered_at=DAY1, network_id="n-1"):
    conn.execute(
        "INSERT INTO daemons (id, network_id, api_key, registered_at, last_seen) VALUES (?, ?, ?, ?, ?)",
        (daemon_id, network_id, api_key, registered_at, last_seen),
    )


@pytest.fixture
def one_network(baseline_conn):
    baseline_conn.execute(
        "INSERT INTO users (id, name, created_at, updated_at) VALUES ('u-a', 'Alice', ?, ?)", (DAY1, DAY1)
    )
    baseline_conn.execute(
        "INSERT INTO networks (id, name, user_id, created_at, updated_at) VALUES ('n-1', 'Home', 'u-a', ?, ?)",
        (DAY1, DAY1),
    )
    return baseline_conn


class TestBaseline:

    def test_creates_pre_auth_schema(self, executor, conn):
        executor.run(target=1)

        for table in ("users", "networks", "hosts", "daemons", "services", "subnets", "groups"):
            assert schema.table_exists(conn, table)
        assert schema.column_names(conn, "users") == ["id", "name", "created_at", "updated_at"]
        assert schema.index_exists(conn, "idx_daemons_api_key_hash")

    def test_existing_tables_only_record_version(self, one_network, config):
        before = list(one_network.iterdump())
        MigrationExecutor(one_network, config=config).run(target=1)

        after = [line for line in one_network.iterdump() if "_migrations" not in line and "sqlite_sequence" not in line]
        assert after == [line for line in before if "_migrations" not in line and "sqlite_sequence" not in line]


class TestUserAuth:

    def test_adds_credential_columns(self, executor, conn):
        executor.run(target=2)
        columns = schema.column_names(conn, "users")
        assert "password_hash" in columns
        assert "username" in columns
        assert schema.index_exists(conn, "idx_users_name_lower")

    def test_skipped_when_name_retired(self, executor, config):
        executor.run()
        assert executor.registry.get_migration(2).up(executor.conn, config) == {"skipped": True}


class TestCreateDiscovery:

    def test_discovery_table_checks_json(self, executor, conn):
        executor.run(target=3)
        assert schema.column_exists(conn, "daemons", "capabilities")

        conn.execute("INSERT INTO users (id, name, created_at, updated_at) VALUES ('u', 'U', ?, ?)", (DAY1, DAY1))
        conn.execute("INSERT INTO networks (id, name, user_id, created_at, updated_at) VALUES ('n', 'N', 'u', ?, ?)",
                     (DAY1, DAY1))
        conn.execute("INSERT INTO daemons (id, network_id, registered_at) VALUES ('d', 'n', ?)", (DAY1,))
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO discovery (id, network_id, daemon_id, run_type, discovery_type, name, created_at, updated_at) "
                "VALUES ('x', 'n', 'd', 'not json', '{}', 'Scan', ?, ?)", (DAY1, DAY1),
            )


class TestNormalizeDaemonColumns:

    def test_updated_at_from_last_seen_or_created_at(self, one_network, config):
        add_daemon(one_network, "d-seen", None, last_seen=DAY2)
        add_daemon(one_network, "d-never", None)

        MigrationExecutor(one_network, config=config).run(target=4)

        rows = dict((r[0], r[1:]) for r in one_network.execute("SELECT id, created_at, updated_at FROM daemons"))
        assert rows == {"d-seen": (DAY1, DAY2), "d-never": (DAY1, DAY1)}
        assert not schema.column_exists(one_network, "daemons", "registered_at")
        assert schema.column_not_null(one_network, "daemons", "updated_at")


class TestApiKeys:

    def test_one_row_per_keyed_daemon(self, one_network, config):
        add_daemon(one_network, "d-1", "secret-1", last_seen=DAY2)
        add_daemon(one_network, "d-2", None)

        executor = MigrationExecutor(one_network, config=config)
        executor.run(target=5)

        rows = one_network.execute(
            "SELECT key, network_id, name, is_enabled, created_at, last_used, expires_at FROM api_keys"
        ).fetchall()
        assert rows == [("secret-1", "n-1", "Api Key", 1, DAY1, DAY2, None)]
        assert not schema.column_exists(one_network, "daemons", "api_key")
        assert not schema.index_exists(one_network, "idx_daemons_api_key_hash")
        assert executor.manager.get_migration_record(5).metadata == {"api_keys_migrated": 1}

    def test_shared_key_fails_unit(self, one_network, config):
        add_daemon(one_network, "d-1", "same")
        add_daemon(one_network, "d-2", "same")

        executor = MigrationExecutor(one_network, config=config)
        with pytest.raises(DataIntegrityViolation) as exc_info:
            executor.run()

        assert exc_info.value.version == 5
        assert executor.current_version() == 4
        assert not schema.table_exists(one_network, "api_keys")
        assert schema.column_exists(one_network, "daemons", "api_key")

    def test_keys_cascade_with_network(self, one_network, config):
        add_daemon(one_network, "d-1", "secret-1")
        MigrationExecutor(one_network, config=config).run()

        one_network.execute("DELETE FROM networks WHERE id = 'n-1'")
        assert one_network.execute("SELECT COUNT(*) FROM api_keys").fetchone()[0] == 0


class TestOidcAuth:

    @pytest.fixture
    def migrated(self, executor, conn):
        executor.run()
        return conn

    def add_user(self, conn, user_id, email, provider=None, subject=None):
        conn.execute(
            "INSERT INTO users (id, email, oidc_provider, oidc_subject, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, email, provider, subject, DAY1, DAY1),
        )

    def test_users_shape(self, migrated):
        assert schema.column_names(migrated, "users") == [
            "id", "email", "password_hash", "oidc_provider", "oidc_subject",
            "oidc_linked_at", "created_at", "updated_at",
        ]
        assert schema.column_not_null(migrated, "users", "email")
        assert not schema.index_exists(migrated, "idx_users_name_lower")

    def test_email_unique_case_insensitive(self, migrated):
        self.add_user(migrated, "u-1", "alice@example.com")
        with pytest.raises(sqlite3.IntegrityError):
            self.add_user(migrated, "u-2", "ALICE@example.com")

    def test_email_required(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            self.add_user(migrated, "u-1", None)

    def test_oidc_pair_unique_only_when_both_set(self, migrated):
        self.add_user(migrated, "u-1", "a@example.com")
        self.add_user(migrated, "u-2", "b@example.com")
        self.add_user(migrated, "u-3", "c@example.com", provider="google")
        self.add_user(migrated, "u-4", "d@example.com", provider="google")
        self.add_user(migrated, "u-5", "e@example.com", provider="google", subject="123")
        self.add_user(migrated, "u-6", "f@example.com", provider="github", subject="123")

        with pytest.raises(sqlite3.IntegrityError):
            self.add_user(migrated, "u-7", "g@example.com", provider="google", subject="123")

    def test_networks_survive_rebuild(self, legacy_store, config):
        MigrationExecutor(legacy_store, config=config).run()

        assert legacy_store.execute("SELECT COUNT(*) FROM networks").fetchone()[0] == 2
        # The rebuilt table still backs the networks foreign key
        legacy_store.execute("DELETE FROM users")
        assert legacy_store.execute("SELECT COUNT(*) FROM networks").fetchone()[0] == 0

    def test_collisions_resolved_before_index(self, baseline_conn, config):
        conn = baseline_conn
        executor = MigrationExecutor(conn, config=config)
        executor.run(target=5)
        conn.executemany(
            "INSERT INTO users (id, name, username, password_hash, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            [
                ("u-1", "Bob", "bob", "h", DAY1, DAY1),
                ("u-2", "Bobby", "BOB", "h", DAY2, DAY2),
            ],
        )

        executor.run()

        emails = dict(conn.execute("SELECT id, email FROM users"))
        assert emails == {"u-1": "bob@example.com", "u-2": "BOB2@example.com"}
        backfill = executor.manager.get_migration_record(6).metadata["backfill"]
        assert backfill == {"assigned": 2, "decorated": 1, "fallback": 0}
