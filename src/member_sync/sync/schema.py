"""SQLite storage for sync state.

The database holds:

* one table per entity kind with ``TrackedEntity`` rows
  (``tracked_members``, ``tracked_parents``),
* per-field modification timestamps for both systems,
* one table per list-valued field with ``ListPosition`` rows
  (``team_positions``, ``committee_positions``),
* two append-only audit tables (``conflict_records``, ``change_records``),
* a singleton row with the reverse-detection checkpoint.

Schema changes are expressed as an ordered ``MIGRATIONS`` list.  The number
of applied migrations is stored in ``PRAGMA user_version`` and each pending
migration runs once, inside its own transaction, when the database is
opened.  Never edit an existing migration; append a new one.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

ENTITY_TABLES: dict[str, str] = {
    "member": "tracked_members",
    "parent": "tracked_parents",
}

LIST_TABLES: dict[str, str] = {
    "team_history": "team_positions",
    "committee_history": "committee_positions",
}


def _entity_table(table: str) -> str:
    return f"""
        CREATE TABLE {table} (
            identity TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            source_fingerprint TEXT NOT NULL,
            last_synced_fingerprint TEXT,
            remote_id INTEGER,
            last_seen_at TEXT NOT NULL,
            last_synced_at TEXT,
            created_at TEXT NOT NULL,
            is_former INTEGER NOT NULL DEFAULT 0
        )
    """


def _position_table(table: str) -> str:
    return f"""
        CREATE TABLE {table} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            identity TEXT NOT NULL,
            group_name TEXT NOT NULL,
            role_name TEXT NOT NULL DEFAULT '',
            is_active INTEGER NOT NULL DEFAULT 1,
            start_date TEXT,
            end_date TEXT,
            remote_index INTEGER,
            fingerprint TEXT NOT NULL,
            last_synced_fingerprint TEXT,
            is_backfill INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (identity, group_name, role_name)
        )
    """


# Each entry is one schema version: a tuple of statements run together.
MIGRATIONS: list[tuple[str, ...]] = [
    # 1: base layout
    (
        *(_entity_table(t) for t in ENTITY_TABLES.values()),
        *(
            f"CREATE INDEX idx_{t}_fingerprints ON {t} "
            "(source_fingerprint, last_synced_fingerprint)"
            for t in ENTITY_TABLES.values()
        ),
        """
        CREATE TABLE field_timestamps (
            kind TEXT NOT NULL,
            identity TEXT NOT NULL,
            field TEXT NOT NULL,
            upstream_modified TEXT,
            downstream_modified TEXT,
            PRIMARY KEY (kind, identity, field)
        )
        """,
        *(_position_table(t) for t in LIST_TABLES.values()),
        *(
            f"CREATE INDEX idx_{t}_identity ON {t} (identity)"
            for t in LIST_TABLES.values()
        ),
        """
        CREATE TABLE conflict_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_id TEXT NOT NULL,
            field TEXT NOT NULL,
            upstream_value TEXT,
            downstream_value TEXT,
            upstream_modified TEXT,
            downstream_modified TEXT,
            winner TEXT NOT NULL,
            reason TEXT NOT NULL,
            resolved_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX idx_conflict_records_entity "
        "ON conflict_records (entity_id)",
        "CREATE INDEX idx_conflict_records_resolved "
        "ON conflict_records (resolved_at)",
        """
        CREATE TABLE change_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_id TEXT NOT NULL,
            field TEXT NOT NULL,
            old_value TEXT,
            new_value TEXT,
            downstream_modified TEXT,
            detection_run_id TEXT NOT NULL,
            detected_at TEXT NOT NULL,
            synced_at TEXT
        )
        """,
        "CREATE INDEX idx_change_records_entity "
        "ON change_records (entity_id)",
        "CREATE INDEX idx_change_records_detected "
        "ON change_records (detected_at)",
        """
        CREATE TABLE detector_checkpoint (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            last_detection_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
    ),
    # 2: downstream mirror and mutation origin
    tuple(
        f"ALTER TABLE {t} ADD COLUMN {column}"
        for t in ENTITY_TABLES.values()
        for column in (
            "sync_origin TEXT",
            "mirror_json TEXT",
            "mirror_fingerprint TEXT",
        )
    ),
]

SCHEMA_VERSION = len(MIGRATIONS)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open a connection with ``sqlite3.Row`` rows and explicit transactions.

    The connection runs in autocommit mode; group writes with
    ``transaction()``.
    """
    db_path = str(db_path)
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(db_path, isolation_level=None)
    con.row_factory = sqlite3.Row
    if db_path != ":memory:":
        con.execute("PRAGMA journal_mode = WAL")
    return con


@contextmanager
def transaction(con: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed block as one transaction.

    Commits on success and rolls back on any exception.  When a transaction
    is already open the block joins it, so helpers can be composed.
    """
    if con.in_transaction:
        yield con
        return

    con.execute("BEGIN IMMEDIATE")
    try:
        yield con
    except BaseException:
        con.execute("ROLLBACK")
        raise
    con.execute("COMMIT")


def schema_version(con: sqlite3.Connection) -> int:
    """Return the number of migrations applied to *con*."""
    return con.execute("PRAGMA user_version").fetchone()[0]


def migrate(con: sqlite3.Connection) -> int:
    """Apply every pending migration.  Safe to call repeatedly.

    Returns:
        The schema version after migrating.

    Raises:
        RuntimeError: If the database was written by a newer release.
    """
    current = schema_version(con)
    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than supported "
            f"version {SCHEMA_VERSION}"
        )

    for version, statements in enumerate(MIGRATIONS, start=1):
        if version <= current:
            continue
        with transaction(con):
            for statement in statements:
                con.execute(statement)
            con.execute(f"PRAGMA user_version = {version}")
        logger.info("Applied schema migration %d", version)

    return schema_version(con)


def open_db(db_path: str | Path) -> sqlite3.Connection:
    """Connect to *db_path* and bring its schema up to date."""
    con = connect(db_path)
    migrate(con)
    return con
