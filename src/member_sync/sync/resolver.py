"""Field-level conflict resolution between upstream and downstream.

For each tracked field, independently:

1. Neither side has a timestamp: upstream wins (``both_null_default``).
2. Only upstream has one: upstream wins (``only_a_has_history``).
3. Only downstream has one: downstream wins (``only_b_has_history``).
4. Timestamps within the grace period: upstream wins
   (``grace_period_default``).
5. Outside the grace period with equal values: no conflict, winner
   ``both`` (``values_match``).
6. Outside the grace period with different values: the strictly newer side
   wins (``a_newer``/``b_newer``) and a ``ConflictRecord`` is produced.

``resolve`` has no side effects.  Conflicts reach the audit log through
``record``, which the engine calls only once the resolved values have been
written downstream.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from ..errors import ConflictResolutionFailure
from .audit import AuditLog
from .fields import TRACKED_FIELDS, normalize_value
from .models import (
    ConflictRecord,
    FieldTimestamps,
    Resolution,
    ResolutionReason,
    ResolutionResult,
    Side,
)
from .timeutil import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_GRACE_MS = 5000


def compare_timestamps(
    a: str | datetime | None,
    b: str | datetime | None,
    tolerance_ms: int = 0,
) -> int:
    """Order two timestamps, treating a missing one as infinitely old.

    Returns:
        ``1`` if *a* is newer than *b* by more than *tolerance_ms*, ``-1``
        if older by more than that, ``0`` otherwise.

    Raises:
        ValueError: If either timestamp is malformed.
    """
    a_dt = parse_timestamp(a)
    b_dt = parse_timestamp(b)
    if a_dt is None and b_dt is None:
        return 0
    if a_dt is None:
        return -1
    if b_dt is None:
        return 1

    delta_ms = (a_dt - b_dt).total_seconds() * 1000
    if abs(delta_ms) <= tolerance_ms:
        return 0
    return 1 if delta_ms > 0 else -1


class ConflictResolver:
    """Decide, field by field, which side's value wins.

    Args:
        grace_ms: Timestamps this close together count as simultaneous.
        audit: Where ``record`` appends genuine conflicts.  ``None``
            disables recording (dry runs).
        fields: Default tracked field set.
    """

    def __init__(
        self,
        grace_ms: int = DEFAULT_GRACE_MS,
        audit: AuditLog | None = None,
        fields: Iterable[str] = TRACKED_FIELDS,
    ) -> None:
        if grace_ms < 0:
            raise ValueError("grace_ms must be >= 0")
        self.grace_ms = grace_ms
        self.audit = audit
        self.fields = tuple(fields)

    def resolve(
        self,
        entity_id: str,
        upstream_values: Mapping[str, Any],
        downstream_values: Mapping[str, Any],
        timestamps: Mapping[str, FieldTimestamps],
        fields: Iterable[str] | None = None,
    ) -> ResolutionResult:
        """Resolve every tracked field of one entity.

        Args:
            entity_id: Identity of the entity, for audit rows.
            upstream_values: Field values from the upstream snapshot.
            downstream_values: Current downstream field values.
            timestamps: Per-field modification timestamps.
            fields: Fields to resolve (defaults to the tracked set).

        Returns:
            A ``ResolutionResult`` with one ``Resolution`` per field and the
            genuine conflicts, not yet recorded.

        Raises:
            ConflictResolutionFailure: If a timestamp cannot be parsed.
        """
        resolutions: dict[str, Resolution] = {}
        conflicts: list[ConflictRecord] = []

        for name in fields if fields is not None else self.fields:
            stamps = timestamps.get(name) or FieldTimestamps(field=name)
            resolution, conflict = self._resolve_field(
                entity_id,
                name,
                upstream_values.get(name),
                downstream_values.get(name),
                stamps,
            )
            resolutions[name] = resolution
            if conflict is not None:
                conflicts.append(conflict)

        if conflicts:
            logger.info(
                "Resolved %d conflict(s) for %s: %s",
                len(conflicts),
                entity_id,
                ", ".join(
                    f"{c.field}={c.winner.value}" for c in conflicts
                ),
            )

        return ResolutionResult(
            entity_id=entity_id,
            resolutions=resolutions,
            conflicts=conflicts,
        )

    def record(self, result: ResolutionResult) -> list[ConflictRecord]:
        """Append the conflicts of *result* to the audit log.

        Returns the stored records (with ``resolved_at`` set), or the
        unrecorded ones when no audit log is configured.
        """
        if self.audit is None:
            return list(result.conflicts)
        return [self.audit.log_conflict(c) for c in result.conflicts]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve_field(
        self,
        entity_id: str,
        field: str,
        upstream_value: Any,
        downstream_value: Any,
        stamps: FieldTimestamps,
    ) -> tuple[Resolution, ConflictRecord | None]:
        try:
            up_ts = parse_timestamp(stamps.upstream_modified)
            down_ts = parse_timestamp(stamps.downstream_modified)
        except (TypeError, ValueError) as exc:
            raise ConflictResolutionFailure(
                f"Malformed timestamp for {entity_id}.{field}: {exc}",
                entity_id=entity_id,
                field=field,
            ) from exc

        def pick(side: Side, reason: ResolutionReason) -> Resolution:
            value = (
                downstream_value if side == Side.DOWNSTREAM else upstream_value
            )
            return Resolution(
                field=field, value=value, winner=side, reason=reason
            )

        if up_ts is None and down_ts is None:
            return (
                pick(Side.UPSTREAM, ResolutionReason.BOTH_NULL_DEFAULT),
                None,
            )
        if down_ts is None:
            return (
                pick(Side.UPSTREAM, ResolutionReason.ONLY_A_HAS_HISTORY),
                None,
            )
        if up_ts is None:
            return (
                pick(Side.DOWNSTREAM, ResolutionReason.ONLY_B_HAS_HISTORY),
                None,
            )

        delta_ms = (down_ts - up_ts).total_seconds() * 1000
        if abs(delta_ms) <= self.grace_ms:
            return (
                pick(Side.UPSTREAM, ResolutionReason.GRACE_PERIOD_DEFAULT),
                None,
            )

        up_text = normalize_value(upstream_value)
        down_text = normalize_value(downstream_value)
        if up_text == down_text:
            return pick(Side.BOTH, ResolutionReason.VALUES_MATCH), None

        if delta_ms > 0:
            winner, reason = Side.DOWNSTREAM, ResolutionReason.B_NEWER
        else:
            winner, reason = Side.UPSTREAM, ResolutionReason.A_NEWER

        conflict = ConflictRecord(
            entity_id=entity_id,
            field=field,
            upstream_value=up_text,
            downstream_value=down_text,
            upstream_modified=stamps.upstream_modified,
            downstream_modified=stamps.downstream_modified,
            winner=winner,
            reason=reason,
        )
        return pick(winner, reason), conflict
