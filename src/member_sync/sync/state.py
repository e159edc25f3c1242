"""Sync state persistence layer.

``SyncStateTracker`` owns the ``TrackedEntity`` rows of one entity kind and
answers "which entities need a sync pass".

Key design choices:

* **Fingerprint gate** -- an entity is dirty iff ``source_fingerprint`` differs
  from ``last_synced_fingerprint`` (absent counts as different).  Only
  ``upsert_observed`` writes the former and only ``mark_synced`` the latter.
* **Bulk atomicity** -- ``upsert_observed`` applies a whole snapshot in one
  transaction, together with the field timestamps it stamps.
* **Soft removal** -- entities missing from a snapshot are flagged
  ``is_former``; rows are never deleted.
* **Field history** -- per-field timestamps record when a tracked value last
  changed in each system.  First observation stamps nothing, and a stamp
  never moves backwards.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import BaseModel

from .fields import TRACKED_FIELDS, extract_tracked_values
from .fingerprint import canonicalize, fingerprint
from .models import (
    FieldTimestamps,
    MemberRecord,
    ParentRecord,
    Side,
    SyncOrigin,
    SyncPolicy,
    TrackedEntity,
)
from .schema import ENTITY_TABLES, transaction
from .timeutil import is_after, utc_now

logger = logging.getLogger(__name__)

RECORD_TYPES: dict[str, type[BaseModel]] = {
    "member": MemberRecord,
    "parent": ParentRecord,
}

_SIDE_COLUMNS = {
    Side.UPSTREAM: "upstream_modified",
    Side.DOWNSTREAM: "downstream_modified",
}


class SyncStateTracker:
    """Track fingerprints and sync state for one entity kind.

    Args:
        con: Open, migrated SQLite connection (see ``schema.open_db``).
        kind: Entity kind, a key of ``ENTITY_TABLES``.
        tracked_fields: Field names whose changes get timestamped.
        clock: Returns the current time as an ISO 8601 string.
    """

    def __init__(
        self,
        con: sqlite3.Connection,
        kind: str = "member",
        tracked_fields: Iterable[str] = TRACKED_FIELDS,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        if kind not in ENTITY_TABLES:
            raise ValueError(
                f"Unknown entity kind '{kind}'. "
                f"Expected one of: {', '.join(sorted(ENTITY_TABLES))}"
            )
        self._con = con
        self.kind = kind
        self._table = ENTITY_TABLES[kind]
        self.record_type = RECORD_TYPES[kind]
        self.tracked_fields = tuple(tracked_fields)
        self._clock = clock

    @property
    def connection(self) -> sqlite3.Connection:
        return self._con

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def upsert_observed(self, entities: Iterable[Any]) -> int:
        """Record a batch of upstream records as currently observed.

        Each record's fingerprint is recomputed and its payload and
        ``last_seen_at`` overwritten.  ``last_synced_fingerprint`` is never
        touched.  When a known entity's tracked value changed since the
        previous observation, that field's upstream timestamp is stamped.

        Args:
            entities: ``MemberRecord``/``ParentRecord`` instances (matching
                ``kind``) or plain mappings that validate as one.

        Returns:
            Number of records written.
        """
        now = self._clock()
        count = 0
        with transaction(self._con):
            for entity in entities:
                record = self._coerce(entity)
                payload = record.to_canonical()
                new_fp = fingerprint(record.identity, payload)

                previous = self._row(record.identity)
                if (
                    previous is not None
                    and previous["source_fingerprint"] != new_fp
                ):
                    self._stamp_upstream_changes(
                        record.identity,
                        json.loads(previous["payload_json"]),
                        payload,
                        now,
                    )

                self._con.execute(
                    f"""
                    INSERT INTO {self._table} (
                        identity, payload_json, source_fingerprint,
                        last_seen_at, created_at, is_former
                    ) VALUES (?, ?, ?, ?, ?, 0)
                    ON CONFLICT(identity) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        source_fingerprint = excluded.source_fingerprint,
                        last_seen_at = excluded.last_seen_at,
                        is_former = 0
                    """,
                    (
                        record.identity,
                        canonicalize(payload),
                        new_fp,
                        now,
                        now,
                    ),
                )
                count += 1

        logger.info("Observed %d %s record(s)", count, self.kind)
        return count

    def mark_former(self, current_identities: Iterable[str]) -> list[str]:
        """Flag every tracked entity missing from *current_identities*.

        Returns:
            Identities newly flagged as former, sorted.
        """
        current = set(current_identities)
        rows = self._con.execute(
            f"SELECT identity FROM {self._table} "
            "WHERE is_former = 0 ORDER BY identity"
        ).fetchall()
        gone = [r["identity"] for r in rows if r["identity"] not in current]

        if gone:
            with transaction(self._con):
                self._con.executemany(
                    f"UPDATE {self._table} SET is_former = 1 "
                    "WHERE identity = ?",
                    [(identity,) for identity in gone],
                )
            logger.info(
                "Marked %d %s record(s) as former", len(gone), self.kind
            )
        return gone

    # ------------------------------------------------------------------
    # Sync queries
    # ------------------------------------------------------------------

    def entities_needing_sync(
        self, policy: SyncPolicy | None = None
    ) -> list[TrackedEntity]:
        """Return dirty entities ordered by identity.

        With ``policy.force_all`` every tracked entity is returned.
        """
        policy = policy or SyncPolicy()
        if policy.force_all:
            query = f"SELECT * FROM {self._table} ORDER BY identity"
        else:
            query = (
                f"SELECT * FROM {self._table} "
                "WHERE last_synced_fingerprint IS NULL "
                "OR last_synced_fingerprint != source_fingerprint "
                "ORDER BY identity"
            )
        return [self._to_entity(r) for r in self._con.execute(query)]

    def mark_synced(
        self, identity: str, synced_fingerprint: str, remote_id: int
    ) -> bool:
        """Record that *synced_fingerprint* was confirmed written downstream.

        Idempotent: calling again with the same fingerprint and remote id
        changes nothing.

        Returns:
            ``True`` if the row was updated, ``False`` for a repeat call.

        Raises:
            KeyError: If *identity* is not tracked.
        """
        row = self._require(identity)
        if (
            row["last_synced_fingerprint"] == synced_fingerprint
            and row["remote_id"] == remote_id
        ):
            return False

        with transaction(self._con):
            self._con.execute(
                f"UPDATE {self._table} SET "
                "last_synced_fingerprint = ?, remote_id = ?, "
                "last_synced_at = ? WHERE identity = ?",
                (synced_fingerprint, remote_id, self._clock(), identity),
            )
        logger.debug(
            "Marked %s %s synced (remote id %s)",
            self.kind,
            identity,
            remote_id,
        )
        return True

    def mark_remote_missing(self, identity: str) -> None:
        """Forget the downstream counterpart so the next pass recreates it.

        Use only when downstream reports the record does not exist, never
        for a transient write failure.
        """
        self._require(identity)
        with transaction(self._con):
            self._con.execute(
                f"UPDATE {self._table} SET "
                "last_synced_fingerprint = NULL, remote_id = NULL "
                "WHERE identity = ?",
                (identity,),
            )
        logger.warning(
            "%s %s no longer exists downstream; will recreate",
            self.kind.capitalize(),
            identity,
        )

    def get(self, identity: str) -> TrackedEntity | None:
        """Return the tracked entity for *identity*, or ``None``."""
        row = self._row(identity)
        return self._to_entity(row) if row is not None else None

    def get_record(self, identity: str) -> BaseModel | None:
        """Return the last observed payload as a typed record."""
        row = self._row(identity)
        if row is None:
            return None
        return self.record_type.model_validate(
            json.loads(row["payload_json"])
        )

    def all_tracked(self) -> list[TrackedEntity]:
        """Return every entity that has a downstream id, by identity."""
        rows = self._con.execute(
            f"SELECT * FROM {self._table} WHERE remote_id IS NOT NULL "
            "ORDER BY identity"
        )
        return [self._to_entity(r) for r in rows]

    def counts(self) -> dict[str, int]:
        """Summary counts for status output."""
        row = self._con.execute(
            f"""
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(
                    last_synced_fingerprint IS NULL
                    OR last_synced_fingerprint != source_fingerprint
                ), 0) AS dirty,
                COALESCE(SUM(remote_id IS NOT NULL), 0) AS linked,
                COALESCE(SUM(is_former), 0) AS former
            FROM {self._table}
            """
        ).fetchone()
        return {k: row[k] for k in ("total", "dirty", "linked", "former")}

    # ------------------------------------------------------------------
    # Field timestamps
    # ------------------------------------------------------------------

    def field_timestamps(self, identity: str) -> dict[str, FieldTimestamps]:
        """Return timestamps for every tracked field of *identity*.

        Fields without history get ``FieldTimestamps`` with both sides
        ``None``.
        """
        rows = self._con.execute(
            "SELECT field, upstream_modified, downstream_modified "
            "FROM field_timestamps WHERE kind = ? AND identity = ?",
            (self.kind, identity),
        ).fetchall()
        known = {r["field"]: r for r in rows}

        result: dict[str, FieldTimestamps] = {}
        for name in self.tracked_fields:
            row = known.get(name)
            result[name] = FieldTimestamps(
                field=name,
                upstream_modified=row["upstream_modified"] if row else None,
                downstream_modified=(
                    row["downstream_modified"] if row else None
                ),
            )
        return result

    def stamp_field(
        self, identity: str, field: str, side: Side, when: str
    ) -> bool:
        """Set *side*'s modified timestamp of *field* to *when*.

        Stamps never move backwards; an older *when* is ignored.

        Returns:
            ``True`` if the stored timestamp changed.
        """
        if side not in _SIDE_COLUMNS:
            raise ValueError(f"Cannot stamp side '{side}'")
        column = _SIDE_COLUMNS[side]

        row = self._con.execute(
            f"SELECT {column} FROM field_timestamps "
            "WHERE kind = ? AND identity = ? AND field = ?",
            (self.kind, identity, field),
        ).fetchone()
        if row is not None and not is_after(when, row[column]):
            return False

        with transaction(self._con):
            self._con.execute(
                f"""
                INSERT INTO field_timestamps (kind, identity, field, {column})
                VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, identity, field) DO UPDATE SET
                    {column} = excluded.{column}
                """,
                (self.kind, identity, field, when),
            )
        return True

    # ------------------------------------------------------------------
    # Downstream mirror
    # ------------------------------------------------------------------

    def record_mirror(
        self,
        identity: str,
        values: Mapping[str, str | None],
        origin: SyncOrigin,
    ) -> str:
        """Store the last known downstream tracked values of *identity*.

        Returns:
            The mirror fingerprint.
        """
        mirror = {name: values.get(name) for name in self.tracked_fields}
        mirror_fp = fingerprint(identity, mirror)
        with transaction(self._con):
            self._con.execute(
                f"UPDATE {self._table} SET mirror_json = ?, "
                "mirror_fingerprint = ?, sync_origin = ? WHERE identity = ?",
                (canonicalize(mirror), mirror_fp, origin.value, identity),
            )
        return mirror_fp

    def mirror_fingerprint_of(
        self, identity: str, fields: Mapping[str, Any]
    ) -> str:
        """Fingerprint of the tracked values found in profile *fields*."""
        return fingerprint(
            identity, extract_tracked_values(fields, self.tracked_fields)
        )

    def set_origin(
        self, identity: str, origin: SyncOrigin | None
    ) -> None:
        """Set (or clear, with ``None``) the last mutation origin."""
        with transaction(self._con):
            self._con.execute(
                f"UPDATE {self._table} SET sync_origin = ? WHERE identity = ?",
                (origin.value if origin else None, identity),
            )

    def record_reverse_sync(
        self, identity: str, fields: Iterable[str], when: str | None = None
    ) -> None:
        """Record that downstream edits to *fields* were pushed upstream.

        Stamps each field's upstream timestamp and sets the mutation origin
        to ``reverse_sync``, in one transaction.
        """
        when = when or self._clock()
        with transaction(self._con):
            for name in fields:
                self.stamp_field(identity, name, Side.UPSTREAM, when)
            self.set_origin(identity, SyncOrigin.REVERSE_SYNC)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _coerce(self, entity: Any) -> Any:
        if isinstance(entity, self.record_type):
            return entity
        if isinstance(entity, Mapping):
            return self.record_type.model_validate(entity)
        raise TypeError(
            f"Expected {self.record_type.__name__} or mapping, "
            f"got {type(entity).__name__}"
        )

    def _stamp_upstream_changes(
        self,
        identity: str,
        old_payload: dict[str, Any],
        new_payload: dict[str, Any],
        when: str,
    ) -> None:
        old = extract_tracked_values(
            self.record_type.model_validate(old_payload).to_profile_fields(),
            self.tracked_fields,
        )
        new = extract_tracked_values(
            self.record_type.model_validate(new_payload).to_profile_fields(),
            self.tracked_fields,
        )
        for name in self.tracked_fields:
            if old[name] != new[name]:
                self.stamp_field(identity, name, Side.UPSTREAM, when)

    def _row(self, identity: str) -> sqlite3.Row | None:
        return self._con.execute(
            f"SELECT * FROM {self._table} WHERE identity = ?", (identity,)
        ).fetchone()

    def _require(self, identity: str) -> sqlite3.Row:
        row = self._row(identity)
        if row is None:
            raise KeyError(f"Unknown {self.kind} identity: {identity}")
        return row

    def _to_entity(self, row: sqlite3.Row) -> TrackedEntity:
        return TrackedEntity(
            kind=self.kind,
            identity=row["identity"],
            payload=json.loads(row["payload_json"]),
            source_fingerprint=row["source_fingerprint"],
            last_synced_fingerprint=row["last_synced_fingerprint"],
            remote_id=row["remote_id"],
            last_seen_at=row["last_seen_at"],
            last_synced_at=row["last_synced_at"],
            created_at=row["created_at"],
            is_former=bool(row["is_former"]),
            sync_origin=(
                SyncOrigin(row["sync_origin"]) if row["sync_origin"] else None
            ),
            mirror=(
                json.loads(row["mirror_json"]) if row["mirror_json"] else None
            ),
            mirror_fingerprint=row["mirror_fingerprint"],
        )
