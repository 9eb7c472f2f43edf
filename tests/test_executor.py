"""
Tests for MigrationExecutor

Tests cover:
- Full run from an empty store and from a legacy (untracked) store
- One transaction per unit: rollback on constraint and runtime failures
- Ordering checks before and under the write lock
- Re-running every unit against a migrated store changes nothing
- Dry run, target version and pre-migration snapshots
"""
import json
import sqlite3

import pytest

from stratum.errors import DataIntegrityViolation, MigrationFailed, OrderingViolation
from stratum.migrations import BackupManager, MigrationExecutor, MigrationRegistry, connect
from stratum.migrations import schema
from stratum.migrations.migration_base import MigrationBase
from stratum.migrations.versions.v001_baseline import Migration as Baseline

# Timestamps used by the legacy_store fixture
DAY1 = "2024-01-01T00:00:00+00:00"
DAY3 = "2024-01-03T00:00:00+00:00"


class AddColumnThenOrphan(MigrationBase):
    """Adds a column, then inserts a network owned by a missing principal."""
    version = 2
    description = "Add column then violate a foreign key"

    def up(self, conn, config):
        schema.add_column(conn, "users", "nickname", "TEXT")
        conn.execute(
            "INSERT INTO networks (id, name, user_id, created_at, updated_at) "
            "VALUES ('n-x', 'Ghost', 'missing', '2024', '2024')"
        )


class AddColumnThenCrash(MigrationBase):
    version = 2
    description = "Add column then raise"

    def up(self, conn, config):
        schema.add_column(conn, "users", "nickname", "TEXT")
        raise RuntimeError("boom")


class Interrupted(MigrationBase):
    version = 2
    description = "Interrupted by the operator"

    def up(self, conn, config):
        schema.add_column(conn, "users", "nickname", "TEXT")
        raise KeyboardInterrupt()


class DanglingWithoutForeignKeys(MigrationBase):
    version = 2
    description = "Leave a dangling foreign key with enforcement off"
    disable_foreign_keys = True

    def up(self, conn, config):
        conn.execute(
            "INSERT INTO networks (id, name, user_id, created_at, updated_at) "
            "VALUES ('n-x', 'Ghost', 'missing', '2024', '2024')"
        )


class RacingBaseline(Baseline):
    """Baseline whose validate() lets a competing executor win the race."""

    competitor = None

    def validate(self, conn):
        self.competitor.apply(Baseline())


def _registry(*units):
    return MigrationRegistry.from_migrations([Baseline(), *units])


class TestFullRun:
    """Running every unit against fresh and legacy stores"""

    def test_fresh_store_reaches_latest(self, conn, config):
        executor = MigrationExecutor(conn, config=config)
        result = executor.run()

        assert result.start_version == 0
        assert result.end_version == 6
        assert [r.version for r in result.applied] == [1, 2, 3, 4, 5, 6]
        assert executor.current_version() == 6
        assert conn.execute("PRAGMA user_version").fetchone()[0] == 6

    def test_second_run_is_up_to_date(self, conn, config):
        MigrationExecutor(conn, config=config).run()
        result = MigrationExecutor(conn, config=config).run()

        assert result.up_to_date
        assert result.applied == []
        assert result.end_version == 6

    def test_legacy_store_end_state(self, legacy_store, config, read_metadata):
        conn = legacy_store
        MigrationExecutor(conn, config=config).run()

        # Alice (day 1) survives and owns both networks
        users = conn.execute("SELECT id, email FROM users").fetchall()
        assert users == [("u-a", "Alice@example.com")]
        owners = conn.execute("SELECT id, user_id FROM networks ORDER BY id").fetchall()
        assert owners == [("n-1", "u-a"), ("n-2", "u-a")]

        # Docker record reshaped, everything else on the document untouched
        (source,) = conn.execute("SELECT source FROM services WHERE id = 's-1'").fetchone()
        assert json.loads(source) == {"type": "Discovery", "metadata": [
            {"type": "Docker", "host_id": "h1", "daemon_id": "d1", "date": "2024-01-01"},
        ]}
        assert read_metadata(conn, "hosts", "h1") == [
            {"type": "SelfReport", "host_id": "00000000-0000-0000-0000-000000000000",
             "daemon_id": "d-1", "date": DAY1},
        ]

        # Daemon key moved into api_keys
        keys = conn.execute(
            "SELECT key, network_id, name, is_enabled, created_at, updated_at, last_used FROM api_keys"
        ).fetchall()
        assert keys == [("secret-1", "n-1", "Api Key", 1, DAY1, DAY1, DAY3)]
        assert not schema.column_exists(conn, "daemons", "api_key")
        assert conn.execute("SELECT created_at, updated_at FROM daemons").fetchone() == (DAY1, DAY3)

        assert conn.execute("PRAGMA foreign_key_check").fetchall() == []
        assert conn.execute("PRAGMA integrity_check").fetchone()[0] == "ok"

    def test_rerunning_every_unit_changes_nothing(self, legacy_store, config):
        conn = legacy_store
        executor = MigrationExecutor(conn, config=config)
        executor.run()
        before = list(conn.iterdump())

        for migration in executor.registry.get_all_migrations():
            migration.up(conn, config)

        assert list(conn.iterdump()) == before

    def test_history_records_metadata(self, legacy_store, config):
        executor = MigrationExecutor(legacy_store, config=config)
        executor.run()

        v2 = executor.manager.get_migration_record(2)
        assert v2.metadata["reconcile"]["seed_id"] == "u-a"
        assert v2.metadata["reconcile"]["merged_ids"] == ["u-b"]
        v5 = executor.manager.get_migration_record(5)
        assert v5.metadata == {"api_keys_migrated": 1}

    def test_foreign_keys_restored_after_rebuild(self, conn, config):
        MigrationExecutor(conn, config=config).run()
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


class TestAtomicity:
    """A failing unit leaves no trace"""

    def test_constraint_failure_rolls_back(self, conn, config):
        executor = MigrationExecutor(conn, _registry(AddColumnThenOrphan()), config)
        executor.apply(Baseline())

        with pytest.raises(DataIntegrityViolation) as exc_info:
            executor.run()

        assert exc_info.value.version == 2
        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)
        assert executor.current_version() == 1
        assert not schema.column_exists(conn, "users", "nickname")
        assert conn.execute("SELECT COUNT(*) FROM networks").fetchone()[0] == 0
        assert not conn.in_transaction

    def test_runtime_failure_rolls_back(self, conn, config):
        executor = MigrationExecutor(conn, _registry(AddColumnThenCrash()), config)

        with pytest.raises(MigrationFailed, match="boom"):
            executor.run()

        # v1 committed before v2 failed
        assert executor.current_version() == 1
        assert not schema.column_exists(conn, "users", "nickname")

    def test_interrupt_rolls_back_and_propagates(self, conn, config):
        executor = MigrationExecutor(conn, _registry(Interrupted()), config)
        executor.apply(Baseline())

        with pytest.raises(KeyboardInterrupt):
            executor.apply(Interrupted())

        assert executor.current_version() == 1
        assert not schema.column_exists(conn, "users", "nickname")

    def test_dangling_foreign_key_fails_check(self, conn, config):
        executor = MigrationExecutor(conn, _registry(DanglingWithoutForeignKeys()), config)

        with pytest.raises(DataIntegrityViolation, match="dangling"):
            executor.run()

        assert executor.current_version() == 1
        assert conn.execute("SELECT COUNT(*) FROM networks").fetchone()[0] == 0
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_busy_store_fails_with_version(self, db_path, config):
        config.busy_timeout_ms = 0
        holder = sqlite3.connect(db_path, isolation_level=None)
        conn = connect(db_path, config)
        try:
            holder.execute("BEGIN IMMEDIATE")
            executor = MigrationExecutor(conn, _registry(), config)

            with pytest.raises(MigrationFailed, match="locked") as exc_info:
                executor.apply(Baseline())

            assert exc_info.value.version == 1
            assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
            assert not conn.in_transaction
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        finally:
            holder.execute("ROLLBACK")
            holder.close()
            conn.close()

        conn = connect(db_path, config)
        try:
            assert MigrationExecutor(conn, _registry(), config).current_version() == 0
        finally:
            conn.close()

    def test_open_transaction_rejected(self, conn):
        conn.execute("BEGIN")
        try:
            with pytest.raises(MigrationFailed):
                MigrationExecutor(conn)
        finally:
            conn.execute("ROLLBACK")


class TestOrdering:
    """Units apply only as current + 1"""

    def test_apply_out_of_order(self, conn, config):
        executor = MigrationExecutor(conn, config=config)
        v3 = executor.registry.get_migration(3)

        with pytest.raises(OrderingViolation, match="next version is v1"):
            executor.apply(v3)

        assert executor.current_version() == 0
        assert not schema.table_exists(conn, "discovery")

    def test_apply_twice(self, conn, config):
        executor = MigrationExecutor(conn, _registry(), config)
        executor.apply(Baseline())

        with pytest.raises(OrderingViolation):
            executor.apply(Baseline())
        assert executor.manager.get_migration_count() == 1

    def test_competing_executor_loses_under_lock(self, db_path, config):
        first = connect(db_path, config)
        second = connect(db_path, config)
        try:
            winner = MigrationExecutor(first, _registry(), config)
            loser = MigrationExecutor(second, _registry(), config)

            racing = RacingBaseline()
            racing.competitor = winner
            with pytest.raises(OrderingViolation, match="another executor"):
                loser.apply(racing)

            assert winner.manager.get_migration_count() == 1
            assert loser.current_version() == 1
        finally:
            first.close()
            second.close()

    def test_history_gap_rejected(self, conn, config):
        executor = MigrationExecutor(conn, config=config)
        executor.manager.ensure_table()
        executor.manager.record_migration(1, "one")
        executor.manager.record_migration(3, "three")

        with pytest.raises(OrderingViolation, match="contiguous"):
            executor.run()

    def test_store_newer_than_registry(self, conn, config):
        executor = MigrationExecutor(conn, _registry(), config)
        executor.manager.ensure_table()
        executor.manager.record_migration(1, "one")
        executor.manager.record_migration(2, "two")

        with pytest.raises(OrderingViolation, match="newest known unit is v1"):
            executor.run()

    def test_target_behind_store(self, conn, config):
        executor = MigrationExecutor(conn, config=config)
        executor.run(target=3)

        with pytest.raises(OrderingViolation, match="irreversible"):
            executor.run(target=2)


class TestRunOptions:
    """Dry run, target and snapshots"""

    def test_dry_run_changes_nothing(self, conn, config):
        executor = MigrationExecutor(conn, config=config)
        result = executor.run(dry_run=True)

        assert result.dry_run
        assert [m.version for m in result.planned] == [1, 2, 3, 4, 5, 6]
        assert result.applied == []
        assert executor.current_version() == 0
        assert not schema.table_exists(conn, "users")
        assert not schema.table_exists(conn, "_migrations")

    def test_dry_run_on_untracked_store_writes_nothing(self, baseline_conn, config):
        before = list(baseline_conn.iterdump())

        result = MigrationExecutor(baseline_conn, config=config).run(dry_run=True)

        assert result.planned
        assert list(baseline_conn.iterdump()) == before
        assert not schema.table_exists(baseline_conn, "_migrations")

    def test_target_stops_early(self, conn, config):
        executor = MigrationExecutor(conn, config=config)
        result = executor.run(target=4)

        assert result.end_version == 4
        assert executor.pending() == [executor.registry.get_migration(5), executor.registry.get_migration(6)]
        assert schema.column_exists(conn, "daemons", "api_key")

    def test_snapshot_taken_before_units(self, legacy_store, db_path, config):
        backups = BackupManager(db_path)
        result = MigrationExecutor(legacy_store, config=config, backup_manager=backups).run()

        assert result.backup is not None
        assert result.backup.schema_version == 0
        assert backups.verify_backup(result.backup.path)

        snapshot = sqlite3.connect(result.backup.path)
        try:
            assert snapshot.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 2
        finally:
            snapshot.close()

    def test_snapshots_pruned_to_keep(self, conn, db_path, config):
        config.backups.keep = 1
        backups = BackupManager(db_path)
        MigrationExecutor(conn, config=config, backup_manager=backups).run(target=2)
        MigrationExecutor(conn, config=config, backup_manager=backups).run()

        assert len(backups.list_backups()) == 1
        assert backups.get_latest_backup().schema_version == 2

    def test_no_snapshot_when_up_to_date(self, conn, db_path, config):
        backups = BackupManager(db_path)
        MigrationExecutor(conn, config=config).run()
        result = MigrationExecutor(conn, config=config, backup_manager=backups).run()

        assert result.backup is None
        assert backups.list_backups() == []
