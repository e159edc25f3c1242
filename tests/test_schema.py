"""Tests for the SQLite schema and migrations."""

import pytest

from member_sync.sync.schema import (
    SCHEMA_VERSION,
    connect,
    migrate,
    open_db,
    schema_version,
    transaction,
)


def _tables(con) -> set[str]:
    rows = con.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table'"
    ).fetchall()
    return {r["name"] for r in rows}


class TestMigrate:
    """Tests for versioned migrations."""

    def test_fresh_database_fully_migrated(self, tmp_path):
        con = open_db(tmp_path / "state" / "sync.db")
        assert schema_version(con) == SCHEMA_VERSION
        assert {
            "tracked_members",
            "tracked_parents",
            "field_timestamps",
            "team_positions",
            "committee_positions",
            "conflict_records",
            "change_records",
            "detector_checkpoint",
        } <= _tables(con)
        con.close()

    def test_migrate_is_idempotent(self, db):
        assert migrate(db) == SCHEMA_VERSION
        assert migrate(db) == SCHEMA_VERSION

    def test_mirror_columns_added(self, db):
        columns = {
            r["name"]
            for r in db.execute("PRAGMA table_info(tracked_members)")
        }
        assert {"sync_origin", "mirror_json", "mirror_fingerprint"} <= columns

    def test_newer_database_rejected(self, tmp_path):
        con = connect(tmp_path / "sync.db")
        con.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        with pytest.raises(RuntimeError, match="newer"):
            migrate(con)
        con.close()


class TestTransaction:
    """Tests for the transaction context manager."""

    def test_commits_on_success(self, db):
        with transaction(db):
            db.execute(
                "INSERT INTO detector_checkpoint VALUES (1, 'a', 'b')"
            )
        assert db.execute(
            "SELECT COUNT(*) FROM detector_checkpoint"
        ).fetchone()[0] == 1

    def test_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError):
            with transaction(db):
                db.execute(
                    "INSERT INTO detector_checkpoint VALUES (1, 'a', 'b')"
                )
                raise RuntimeError("boom")
        assert db.execute(
            "SELECT COUNT(*) FROM detector_checkpoint"
        ).fetchone()[0] == 0

    def test_nested_block_joins_outer(self, db):
        with pytest.raises(RuntimeError):
            with transaction(db):
                with transaction(db):
                    db.execute(
                        "INSERT INTO detector_checkpoint "
                        "VALUES (1, 'a', 'b')"
                    )
                raise RuntimeError("boom")
        assert db.execute(
            "SELECT COUNT(*) FROM detector_checkpoint"
        ).fetchone()[0] == 0
