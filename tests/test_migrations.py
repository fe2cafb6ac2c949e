"""
Unit tests for the schema migrator: idempotent catch-up, all-or-nothing
application and detection of a mutated or newer history.
"""

import sqlite3

import pytest

from caldav_tasks.db import TaskStore
from caldav_tasks.migrations import MIGRATIONS
from caldav_tasks.migrations import Migration
from caldav_tasks.migrations import applied_migrations
from caldav_tasks.migrations import apply_migrations
from caldav_tasks.migrations import current_version
from caldav_tasks.migrations import validate_migrations
from caldav_tasks.models import SchemaMigrationFailure


@pytest.fixture
def conn(store_path):
    c = sqlite3.connect(str(store_path), isolation_level=None)
    c.row_factory = sqlite3.Row
    yield c
    c.close()


def _schema(conn) -> list[tuple]:
    return conn.execute(
        "SELECT type, name, sql FROM sqlite_master WHERE name != 'schema_migrations' "
        "ORDER BY type, name"
    ).fetchall()


def _columns(conn, table: str) -> list[str]:
    return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})")]


class TestCatchUp:
    def test_fresh_store_reaches_latest_version(self, conn):
        applied = apply_migrations(conn)
        assert applied == [1, 2, 3]
        assert current_version(conn) == 3
        assert [row["version"] for row in applied_migrations(conn)] == [1, 2, 3]

    def test_applying_twice_is_a_noop(self, conn):
        apply_migrations(conn)
        schema_once = [tuple(r) for r in _schema(conn)]
        history_once = [tuple(r) for r in applied_migrations(conn)]

        assert apply_migrations(conn) == []
        assert [tuple(r) for r in _schema(conn)] == schema_once
        assert [tuple(r) for r in applied_migrations(conn)] == history_once

    def test_catch_up_from_older_version_keeps_data(self, conn):
        apply_migrations(conn, MIGRATIONS[:1])
        conn.execute(
            "INSERT INTO accounts (id, name, server_url, username, password) "
            "VALUES ('a1', 'Home', 'https://dav', 'u', 'p')"
        )
        conn.execute(
            "INSERT INTO calendars (id, account_id, display_name, url) "
            "VALUES ('c1', 'a1', 'Tasks', '/cal/')"
        )
        conn.execute(
            "INSERT INTO tasks (id, uid, title, created_at, modified_at, account_id, calendar_id) "
            "VALUES ('t1', 'u1', 'Old task', '2026-01-01', '2026-01-01', 'a1', 'c1')"
        )

        assert apply_migrations(conn) == [2, 3]
        row = conn.execute("SELECT title, url FROM tasks WHERE id = 't1'").fetchone()
        assert row["title"] == "Old task"
        assert row["url"] is None

    def test_nullable_ownership_after_v2(self, conn):
        apply_migrations(conn)
        notnull = {
            row["name"]: row["notnull"] for row in conn.execute("PRAGMA table_info(tasks)")
        }
        assert notnull["account_id"] == 0
        assert notnull["calendar_id"] == 0
        assert "url" in _columns(conn, "tasks")

    def test_fresh_and_caught_up_schemas_match(self, tmp_path, conn):
        apply_migrations(conn, MIGRATIONS[:2])
        apply_migrations(conn)

        other = sqlite3.connect(str(tmp_path / "fresh.db"), isolation_level=None)
        try:
            apply_migrations(other)
            assert [tuple(r) for r in _schema(conn)] == [
                tuple(r) for r in other.execute(
                    "SELECT type, name, sql FROM sqlite_master "
                    "WHERE name != 'schema_migrations' ORDER BY type, name"
                ).fetchall()
            ]
        finally:
            other.close()


class TestAtomicity:
    def test_failing_migration_leaves_store_untouched(self, conn):
        apply_migrations(conn)
        before = [tuple(r) for r in _schema(conn)]
        broken = MIGRATIONS + (
            Migration(4, "add_notes", ("CREATE TABLE notes (id TEXT)",)),
            Migration(5, "broken", ("THIS IS NOT SQL",)),
        )

        with pytest.raises(SchemaMigrationFailure) as excinfo:
            apply_migrations(conn, broken)

        assert excinfo.value.version == 5
        assert current_version(conn) == 3
        assert [tuple(r) for r in _schema(conn)] == before

    def test_failure_on_empty_store_records_nothing(self, conn):
        broken = (Migration(1, "broken", ("CREATE TABLE ok (id TEXT)", "NOT SQL")),)
        with pytest.raises(SchemaMigrationFailure):
            apply_migrations(conn, broken)
        assert current_version(conn) == 0
        assert _schema(conn) == []

    def test_store_refuses_to_open_on_failure(self, store_path):
        broken = MIGRATIONS + (Migration(4, "broken", ("NOT SQL",)),)
        store = TaskStore(store_path, migrations=broken)
        with pytest.raises(SchemaMigrationFailure):
            store.connect()
        assert store.conn is None


class TestHistoryChecks:
    def test_mutated_migration_is_detected(self, conn):
        apply_migrations(conn)
        mutated = (
            Migration(1, MIGRATIONS[0].description, MIGRATIONS[0].statements + ("SELECT 1",)),
        ) + MIGRATIONS[1:]
        with pytest.raises(SchemaMigrationFailure, match="differs"):
            apply_migrations(conn, mutated)

    def test_store_from_newer_build_is_rejected(self, conn):
        apply_migrations(conn)
        with pytest.raises(SchemaMigrationFailure, match="newer"):
            apply_migrations(conn, MIGRATIONS[:2])

    def test_migration_inserted_below_applied_version_is_rejected(self, conn):
        apply_migrations(conn, (MIGRATIONS[0], Migration(3, "x", ("SELECT 1",))))
        with pytest.raises(SchemaMigrationFailure):
            apply_migrations(conn, (MIGRATIONS[0], MIGRATIONS[1], Migration(3, "x", ("SELECT 1",))))

    def test_versions_must_increase(self):
        with pytest.raises(SchemaMigrationFailure):
            validate_migrations((MIGRATIONS[1], MIGRATIONS[0]))
        with pytest.raises(SchemaMigrationFailure):
            validate_migrations((MIGRATIONS[0], MIGRATIONS[0]))

    def test_checksum_is_stable(self):
        again = Migration(1, "renamed", MIGRATIONS[0].statements)
        assert again.checksum == MIGRATIONS[0].checksum
