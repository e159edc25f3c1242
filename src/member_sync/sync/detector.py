"""Reverse change detection.

``ReverseChangeDetector.detect()`` pulls downstream records modified since
the last checkpoint and turns human edits of tracked fields into
``ChangeRecord`` rows for a reverse-sync consumer.

Per fetched record:

1. Records without an identity, or for entities the forward sync does not
   track, are skipped.
2. If the entity's last mutation origin is ``forward_sync`` the change is
   our own write.  It is skipped and the origin cleared, so later edits are
   picked up once the checkpoint has moved past that write.  A human edit
   that lands between our write and this detection pass is skipped with
   it; it surfaces only when the record is next modified downstream, as a
   difference against the stale mirror.
3. The tracked-field fingerprint is compared with the stored mirror; equal
   fingerprints mean only untracked content changed.
4. Otherwise one ``ChangeRecord`` is emitted per differing field, the fields'
   downstream timestamps are stamped and the mirror refreshed with origin
   ``user_edit``, all in one transaction.

The checkpoint is written once, after processing, with the wall-clock time
at which the invocation started.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .audit import AuditLog
from .fields import extract_tracked_values
from .models import ChangeRecord, Side, SyncOrigin
from .schema import transaction
from .state import SyncStateTracker
from .timeutil import utc_now

logger = logging.getLogger(__name__)

DEFAULT_DETECTION_START = "2020-01-01T00:00:00Z"

FetchModified = Callable[[str], Iterable[Mapping[str, Any]]]


class ReverseChangeDetector:
    """Detect downstream edits of tracked fields.

    Args:
        tracker: State tracker for the entity kind being watched.
        audit: Audit log receiving change records.
        default_since: Checkpoint used on the very first run.
        clock: Returns the current time as an ISO 8601 string.
    """

    def __init__(
        self,
        tracker: SyncStateTracker,
        audit: AuditLog,
        default_since: str = DEFAULT_DETECTION_START,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self.tracker = tracker
        self.audit = audit
        self.default_since = default_since
        self._con = tracker.connection
        self._clock = clock

    # ------------------------------------------------------------------
    # Checkpoint
    # ------------------------------------------------------------------

    def get_checkpoint(self) -> str | None:
        """Persisted checkpoint, or ``None`` before the first run."""
        row = self._con.execute(
            "SELECT last_detection_at FROM detector_checkpoint WHERE id = 1"
        ).fetchone()
        return row["last_detection_at"] if row else None

    def set_checkpoint(self, value: str) -> None:
        with transaction(self._con):
            self._con.execute(
                """
                INSERT INTO detector_checkpoint (
                    id, last_detection_at, updated_at
                ) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_detection_at = excluded.last_detection_at,
                    updated_at = excluded.updated_at
                """,
                (value, self._clock()),
            )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect(
        self, fetch_modified: FetchModified, since: str | None = None
    ) -> list[ChangeRecord]:
        """Run one detection pass.

        Args:
            fetch_modified: Called once with the effective checkpoint; returns
                every downstream record modified after it.  Each record is a
                mapping with ``fields`` (profile fields, including
                ``identity``) and ``modified`` (ISO timestamp).
            since: Explicit checkpoint, overriding the persisted one.

        Returns:
            Change records emitted by this pass.
        """
        run_id = self._clock()
        since = since or self.get_checkpoint() or self.default_since
        logger.info("Detecting downstream changes since %s", since)

        detected: list[ChangeRecord] = []
        fetched = 0
        for remote in fetch_modified(since):
            fetched += 1
            try:
                detected.extend(self._process(remote, run_id))
            except Exception as exc:
                logger.error(
                    "Error detecting changes for remote %s: %s",
                    remote.get("id"),
                    exc,
                )

        self.set_checkpoint(run_id)
        logger.info(
            "Detection run %s: %d record(s) fetched, %d change(s) recorded",
            run_id,
            fetched,
            len(detected),
        )
        return detected

    def _process(
        self, remote: Mapping[str, Any], run_id: str
    ) -> list[ChangeRecord]:
        fields = remote.get("fields") or {}
        identity = fields.get("identity")
        if not identity:
            logger.debug("Skipping remote %s: no identity", remote.get("id"))
            return []

        entity = self.tracker.get(identity)
        if entity is None:
            logger.debug("Skipping %s: not tracked locally", identity)
            return []

        if entity.sync_origin == SyncOrigin.FORWARD_SYNC:
            logger.debug("Skipping %s: last change was forward sync", identity)
            self.tracker.set_origin(identity, None)
            return []

        if (
            self.tracker.mirror_fingerprint_of(identity, fields)
            == entity.mirror_fingerprint
        ):
            return []

        values = extract_tracked_values(fields, self.tracker.tracked_fields)

        previous = entity.mirror or {}
        modified = remote.get("modified")
        changes = [
            ChangeRecord(
                entity_id=identity,
                field=name,
                old_value=previous.get(name),
                new_value=values[name],
                downstream_modified=modified,
                detection_run_id=run_id,
            )
            for name in self.tracker.tracked_fields
            if previous.get(name) != values[name]
        ]

        with transaction(self._con):
            stored = self.audit.log_changes(changes)
            for change in changes:
                self.tracker.stamp_field(
                    identity, change.field, Side.DOWNSTREAM, modified or run_id
                )
            self.tracker.record_mirror(identity, values, SyncOrigin.USER_EDIT)

        for change in stored:
            logger.info(
                "Change detected for %s.%s: %r -> %r",
                identity,
                change.field,
                change.old_value,
                change.new_value,
            )
        return stored
