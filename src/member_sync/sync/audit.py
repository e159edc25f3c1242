"""Append-only audit stores for conflict and change records.

``AuditLog`` writes ``ConflictRecord`` rows (resolver, genuine conflicts
only) and ``ChangeRecord`` rows (reverse detection, one per changed field).
Rows are never updated, except that a reverse-sync consumer may stamp
``synced_at`` once on a change record.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable

from .models import ChangeRecord, ConflictRecord, ResolutionReason, Side
from .schema import transaction
from .timeutil import utc_now

logger = logging.getLogger(__name__)


class AuditLog:
    """Read and append audit rows.

    Args:
        con: Open, migrated SQLite connection.
        clock: Returns the current time as an ISO 8601 string.
    """

    def __init__(
        self,
        con: sqlite3.Connection,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self._con = con
        self._clock = clock

    # ------------------------------------------------------------------
    # Conflict records
    # ------------------------------------------------------------------

    def log_conflict(self, record: ConflictRecord) -> ConflictRecord:
        """Append *record*, stamping ``resolved_at`` when it is unset."""
        stored = record.model_copy(
            update={"resolved_at": record.resolved_at or self._clock()}
        )
        with transaction(self._con):
            self._con.execute(
                """
                INSERT INTO conflict_records (
                    entity_id, field, upstream_value, downstream_value,
                    upstream_modified, downstream_modified,
                    winner, reason, resolved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.entity_id,
                    stored.field,
                    stored.upstream_value,
                    stored.downstream_value,
                    stored.upstream_modified,
                    stored.downstream_modified,
                    stored.winner.value,
                    stored.reason.value,
                    stored.resolved_at,
                ),
            )
        return stored

    def conflicts(
        self, since: str | None = None, entity_id: str | None = None
    ) -> list[ConflictRecord]:
        """Return conflict records, oldest first.

        Args:
            since: Only records resolved at or after this ISO timestamp.
            entity_id: Only records for this entity.
        """
        clauses, params = [], []
        if since is not None:
            clauses.append("resolved_at >= ?")
            params.append(since)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rows = self._con.execute(
            f"SELECT * FROM conflict_records {where} ORDER BY id", params
        )
        return [
            ConflictRecord(
                entity_id=r["entity_id"],
                field=r["field"],
                upstream_value=r["upstream_value"],
                downstream_value=r["downstream_value"],
                upstream_modified=r["upstream_modified"],
                downstream_modified=r["downstream_modified"],
                winner=Side(r["winner"]),
                reason=ResolutionReason(r["reason"]),
                resolved_at=r["resolved_at"],
            )
            for r in rows
        ]

    def conflict_count(self) -> int:
        return self._con.execute(
            "SELECT COUNT(*) FROM conflict_records"
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Change records
    # ------------------------------------------------------------------

    def log_changes(
        self, records: Iterable[ChangeRecord]
    ) -> list[ChangeRecord]:
        """Append change records in one transaction.

        ``detected_at`` is stamped on records that lack it.
        """
        now = self._clock()
        stored = [
            r.model_copy(update={"detected_at": r.detected_at or now})
            for r in records
        ]
        with transaction(self._con):
            self._con.executemany(
                """
                INSERT INTO change_records (
                    entity_id, field, old_value, new_value,
                    downstream_modified, detection_run_id,
                    detected_at, synced_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.entity_id,
                        r.field,
                        r.old_value,
                        r.new_value,
                        r.downstream_modified,
                        r.detection_run_id,
                        r.detected_at,
                        r.synced_at,
                    )
                    for r in stored
                ],
            )
        return stored

    def changes(
        self,
        since: str | None = None,
        unsynced_only: bool = False,
    ) -> list[ChangeRecord]:
        """Return change records ordered by entity, then detection time.

        Args:
            since: Only records detected at or after this ISO timestamp.
            unsynced_only: Only records no reverse sync has consumed yet.
        """
        clauses, params = [], []
        if since is not None:
            clauses.append("detected_at >= ?")
            params.append(since)
        if unsynced_only:
            clauses.append("synced_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rows = self._con.execute(
            f"SELECT * FROM change_records {where} "
            "ORDER BY entity_id, detected_at, id",
            params,
        )
        return [_to_change(r) for r in rows]

    def unsynced_changes(self) -> list[ChangeRecord]:
        """Change records waiting for the reverse-sync consumer."""
        return self.changes(unsynced_only=True)

    def mark_changes_synced(
        self, entity_id: str, fields: Iterable[str]
    ) -> int:
        """Stamp ``synced_at`` on the pending changes of *fields*.

        Already-consumed rows keep their original ``synced_at``.

        Returns:
            Number of rows stamped.
        """
        names = list(fields)
        if not names:
            return 0
        placeholders = ", ".join("?" for _ in names)
        with transaction(self._con):
            cursor = self._con.execute(
                f"""
                UPDATE change_records SET synced_at = ?
                WHERE entity_id = ? AND field IN ({placeholders})
                  AND synced_at IS NULL
                """,
                (self._clock(), entity_id, *names),
            )
        logger.debug(
            "Marked %d change(s) for %s as synced", cursor.rowcount, entity_id
        )
        return cursor.rowcount


def _to_change(row: sqlite3.Row) -> ChangeRecord:
    return ChangeRecord(
        entity_id=row["entity_id"],
        field=row["field"],
        old_value=row["old_value"],
        new_value=row["new_value"],
        downstream_modified=row["downstream_modified"],
        detection_run_id=row["detection_run_id"],
        detected_at=row["detected_at"],
        synced_at=row["synced_at"],
    )
