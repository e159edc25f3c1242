"""Pydantic models for the sync engine.

Defines the data contracts shared by all sync modules:

- ``SyncOrigin``, ``Side``, ``ResolutionReason``, ``SyncAction``: enums.
- ``SyncPolicy``: explicit run policy (replaces scattered force flags).
- ``ContactEntry``, ``MemberRecord``, ``ParentRecord``: typed, versioned
  upstream payloads.
- ``TrackedEntity``, ``FieldTimestamps``: persisted sync state.
- ``Resolution``, ``ConflictRecord``, ``ResolutionResult``: resolver output.
- ``ChangeRecord``: reverse-detection audit row.
- ``ListItem``, ``ListPosition``, ``ListPlan``: list reconciliation.
- ``EntityResult``, ``SyncReport``: run outcome.

All models are frozen (immutable).
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SyncOrigin(str, Enum):
    """Who performed the last mutation of an entity's downstream record."""

    USER_EDIT = "user_edit"
    FORWARD_SYNC = "forward_sync"
    REVERSE_SYNC = "reverse_sync"


class Side(str, Enum):
    """Winning side of a field resolution."""

    UPSTREAM = "upstream"
    DOWNSTREAM = "downstream"
    BOTH = "both"


class ResolutionReason(str, Enum):
    """Why a field resolution picked its winner."""

    BOTH_NULL_DEFAULT = "both_null_default"
    ONLY_A_HAS_HISTORY = "only_a_has_history"
    ONLY_B_HAS_HISTORY = "only_b_has_history"
    GRACE_PERIOD_DEFAULT = "grace_period_default"
    VALUES_MATCH = "values_match"
    A_NEWER = "a_newer"
    B_NEWER = "b_newer"


class SyncAction(str, Enum):
    """What a sync pass did with one entity."""

    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    SKIP = "skip"


class SyncPolicy(BaseModel):
    """Run-wide sync policy.

    Attributes:
        force_all: Treat every tracked entity as dirty and rewrite every
            tracked list position in place.
    """

    force_all: bool = False

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Upstream payloads
# ---------------------------------------------------------------------------


class ContactEntry(BaseModel):
    """One ordered contact entry (``email``, ``mobile``, ``phone``...)."""

    contact_type: str
    value: str | None = None

    model_config = {"frozen": True}


class MemberRecord(BaseModel):
    """Canonical upstream member payload.

    Every field is explicit.  ``schema_version`` is part of the fingerprint,
    so bumping it marks every member dirty on the next snapshot.
    """

    identity: str = Field(min_length=1)
    schema_version: int = 1
    first_name: str | None = None
    infix: str | None = None
    last_name: str | None = None
    gender: str | None = None
    birth_date: str | None = None
    street: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None
    member_since: str | None = None
    membership_type: str | None = None
    contacts: list[ContactEntry] = []
    screening_date: str | None = None
    helpdesk_id: str | None = None
    financial_block: bool | None = None

    model_config = {"frozen": True}

    def to_canonical(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_profile_fields(self) -> dict[str, Any]:
        """Translate into the downstream profile field layout."""
        return {
            "identity": self.identity,
            "first_name": self.first_name,
            "infix": self.infix,
            "last_name": self.last_name,
            "gender": self.gender,
            "birth_date": self.birth_date,
            "address": {
                "street": self.street,
                "house_number": self.house_number,
                "postal_code": self.postal_code,
                "city": self.city,
            },
            "member_since": self.member_since,
            "membership_type": self.membership_type,
            "contact_info": [
                {"contact_type": c.contact_type, "contact_value": c.value}
                for c in self.contacts
            ],
            "screening_date": self.screening_date,
            "helpdesk_id": self.helpdesk_id,
            "financial_block": self.financial_block,
        }


class ParentRecord(BaseModel):
    """Canonical upstream payload for a parent or guardian."""

    identity: str = Field(min_length=1)
    schema_version: int = 1
    name: str | None = None
    contacts: list[ContactEntry] = []
    children: list[str] = []

    model_config = {"frozen": True}

    def to_canonical(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_profile_fields(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "name": self.name,
            "contact_info": [
                {"contact_type": c.contact_type, "contact_value": c.value}
                for c in self.contacts
            ],
            "children": list(self.children),
        }


# ---------------------------------------------------------------------------
# Tracked state
# ---------------------------------------------------------------------------


class TrackedEntity(BaseModel):
    """Persisted sync state of one upstream entity.

    Attributes:
        kind: Entity kind (``member`` or ``parent``).
        identity: Stable upstream identity.
        payload: Canonical payload as last observed.
        source_fingerprint: Fingerprint of ``payload``.
        last_synced_fingerprint: Fingerprint confirmed written downstream.
        remote_id: Downstream id, ``None`` until the first create.
        last_seen_at: When the entity was last present in a snapshot.
        last_synced_at: When the last confirmed write happened.
        is_former: Entity is absent from the latest snapshot.
        sync_origin: Origin of the last downstream mutation.
        mirror: Last known downstream values of the tracked fields.
        mirror_fingerprint: Fingerprint of ``mirror``.
    """

    kind: str
    identity: str
    payload: dict[str, Any]
    source_fingerprint: str
    last_synced_fingerprint: str | None = None
    remote_id: int | None = None
    last_seen_at: str
    last_synced_at: str | None = None
    created_at: str | None = None
    is_former: bool = False
    sync_origin: SyncOrigin | None = None
    mirror: dict[str, Any] | None = None
    mirror_fingerprint: str | None = None

    model_config = {"frozen": True}

    @property
    def is_dirty(self) -> bool:
        """Current payload has not been confirmed written downstream."""
        return self.source_fingerprint != self.last_synced_fingerprint


class FieldTimestamps(BaseModel):
    """Last-modified timestamps of one field in each system.

    ``None`` means no recorded history and counts as infinitely old.
    """

    field: str
    upstream_modified: str | None = None
    downstream_modified: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Conflict resolution
# ---------------------------------------------------------------------------


class Resolution(BaseModel):
    """Winning value of one field."""

    field: str
    value: Any = None
    winner: Side
    reason: ResolutionReason

    model_config = {"frozen": True}


class ConflictRecord(BaseModel):
    """Audit row for a genuine conflict that was resolved by timestamp."""

    entity_id: str
    field: str
    upstream_value: str | None = None
    downstream_value: str | None = None
    upstream_modified: str | None = None
    downstream_modified: str | None = None
    winner: Side
    reason: ResolutionReason
    resolved_at: str | None = None

    model_config = {"frozen": True}


class ResolutionResult(BaseModel):
    """Output of ``ConflictResolver.resolve()``."""

    entity_id: str
    resolutions: dict[str, Resolution] = {}
    conflicts: list[ConflictRecord] = []

    model_config = {"frozen": True}

    @property
    def winning_values(self) -> dict[str, Any]:
        """Winning value per field."""
        return {f: r.value for f, r in self.resolutions.items()}

    @property
    def downstream_wins(self) -> list[str]:
        """Fields where downstream data must be kept."""
        return [
            f
            for f, r in self.resolutions.items()
            if r.winner == Side.DOWNSTREAM
        ]


# ---------------------------------------------------------------------------
# Reverse detection
# ---------------------------------------------------------------------------


class ChangeRecord(BaseModel):
    """One tracked field that a human changed downstream."""

    entity_id: str
    field: str
    old_value: str | None = None
    new_value: str | None = None
    downstream_modified: str | None = None
    detection_run_id: str
    detected_at: str | None = None
    synced_at: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# List reconciliation
# ---------------------------------------------------------------------------


class ListItem(BaseModel):
    """One desired membership in a list-valued field."""

    group_name: str = Field(min_length=1)
    role_name: str = ""
    is_active: bool = True
    start_date: str | None = None
    end_date: str | None = None

    model_config = {"frozen": True}

    @property
    def key(self) -> str:
        return f"{self.group_name}|{self.role_name}"


class ListPosition(BaseModel):
    """Tracked mapping from a membership key to a remote array index."""

    list_field: str
    identity: str
    group_name: str
    role_name: str = ""
    is_active: bool = True
    start_date: str | None = None
    end_date: str | None = None
    remote_index: int | None = None
    fingerprint: str
    last_synced_fingerprint: str | None = None
    is_backfill: bool = False
    last_synced_at: str | None = None

    model_config = {"frozen": True}

    @property
    def key(self) -> str:
        return f"{self.group_name}|{self.role_name}"

    @property
    def is_confirmed(self) -> bool:
        """Entry has been written downstream at ``remote_index``."""
        return self.remote_index is not None


class ListPlan(BaseModel):
    """Reconciled list array for one entity, ready to be written.

    Attributes:
        array: Full list value to write back downstream.
        added: Newly appended keys and the index each was given.
        removed: Keys soft-closed (or already gone remotely).
        unchanged: Keys left in place, with their index.
        refreshed: Unchanged keys rewritten in place under ``force_all``.
        skipped: Added keys that could not be written (no group id).
        desired: Active items the plan was computed for.
        backfill: Backfill flag for newly inserted positions.
    """

    list_field: str
    identity: str
    array: list[dict[str, Any]] = []
    added: dict[str, int] = {}
    removed: list[str] = []
    unchanged: dict[str, int] = {}
    refreshed: list[str] = []
    skipped: list[str] = []
    desired: list[ListItem] = []
    backfill: bool = False

    model_config = {"frozen": True}

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.refreshed)

    @property
    def index_map(self) -> dict[int, str]:
        """Remote index of every live key after the write."""
        mapping = {i: k for k, i in self.unchanged.items()}
        mapping.update({i: k for k, i in self.added.items()})
        return dict(sorted(mapping.items()))


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------


class EntityResult(BaseModel):
    """Outcome of one entity in a sync run."""

    identity: str
    action: SyncAction
    success: bool = True
    error: str | None = None
    remote_id: int | None = None

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for a sync run.

    Attributes:
        run_name: Pipeline label (``members``, ``team_history``...).
        dry_run: Whether writes were suppressed.
        results: Per-entity outcomes.
        started_at: ISO 8601 start time.
        completed_at: ISO 8601 end time.
    """

    run_name: str
    dry_run: bool = False
    results: list[EntityResult] = []
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def _with_action(self, action: SyncAction) -> list[EntityResult]:
        return [
            r for r in self.results if r.success and r.action == action
        ]

    @property
    def created(self) -> list[EntityResult]:
        return self._with_action(SyncAction.CREATE)

    @property
    def updated(self) -> list[EntityResult]:
        return self._with_action(SyncAction.UPDATE)

    @property
    def unchanged(self) -> list[EntityResult]:
        return self._with_action(SyncAction.UNCHANGED)

    @property
    def skipped(self) -> list[EntityResult]:
        """Skipped entities, including those that failed validation."""
        return [r for r in self.results if r.action == SyncAction.SKIP]

    @property
    def failed(self) -> list[EntityResult]:
        """Entities whose processing raised (validation skips excluded)."""
        return [
            r
            for r in self.results
            if not r.success and r.action != SyncAction.SKIP
        ]

    @property
    def errors(self) -> list[EntityResult]:
        """Every result that carries an error message."""
        return [r for r in self.results if r.error is not None]

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        """Format a one-block summary with counts by outcome."""
        lines = [
            f"Sync report for '{self.run_name}'"
            + (" (dry run)" if self.dry_run else ""),
            f"  Created:   {len(self.created)}",
            f"  Updated:   {len(self.updated)}",
            f"  Unchanged: {len(self.unchanged)}",
            f"  Skipped:   {len(self.skipped)}",
            f"  Failed:    {len(self.failed)}",
            f"  Total:     {len(self.results)}",
        ]
        return "\n".join(lines)
