"""Tests for the conflict and change audit log."""

import pytest

from member_sync.sync.audit import AuditLog
from member_sync.sync.models import (
    ChangeRecord,
    ConflictRecord,
    ResolutionReason,
    Side,
)


@pytest.fixture
def audit(db, clock):
    return AuditLog(db, clock=clock)


def _conflict(entity_id="M001", field="email", **overrides):
    data = {
        "entity_id": entity_id,
        "field": field,
        "upstream_value": "a@ex.org",
        "downstream_value": "b@ex.org",
        "upstream_modified": "2026-01-01T00:00:00Z",
        "downstream_modified": "2026-01-02T00:00:00Z",
        "winner": Side.DOWNSTREAM,
        "reason": ResolutionReason.B_NEWER,
    }
    data.update(overrides)
    return ConflictRecord(**data)


def _change(entity_id="M001", field="email", **overrides):
    data = {
        "entity_id": entity_id,
        "field": field,
        "old_value": "a@ex.org",
        "new_value": "b@ex.org",
        "downstream_modified": "2026-01-02T00:00:00Z",
        "detection_run_id": "run-1",
    }
    data.update(overrides)
    return ChangeRecord(**data)


class TestConflicts:
    """Tests for conflict records."""

    def test_log_conflict_stamps_resolved_at(self, audit, clock):
        stored = audit.log_conflict(_conflict())
        assert stored.resolved_at == clock()
        assert audit.conflicts() == [stored]

    def test_explicit_resolved_at_kept(self, audit):
        stored = audit.log_conflict(
            _conflict(resolved_at="2026-01-05T00:00:00Z")
        )
        assert stored.resolved_at == "2026-01-05T00:00:00Z"

    def test_filters(self, audit, clock):
        audit.log_conflict(_conflict("M001"))
        later = clock.advance(hours=1)
        audit.log_conflict(_conflict("M002", field="phone"))

        assert [c.entity_id for c in audit.conflicts(since=later)] == [
            "M002"
        ]
        assert [c.field for c in audit.conflicts(entity_id="M001")] == [
            "email"
        ]
        assert audit.conflict_count() == 2

    def test_enums_round_trip(self, audit):
        audit.log_conflict(_conflict())
        stored = audit.conflicts()[0]
        assert stored.winner is Side.DOWNSTREAM
        assert stored.reason is ResolutionReason.B_NEWER


class TestChanges:
    """Tests for change records."""

    def test_log_changes_appends_all(self, audit, clock):
        stored = audit.log_changes(
            [_change(field="email"), _change(field="phone")]
        )
        assert [c.detected_at for c in stored] == [clock(), clock()]
        assert len(audit.changes()) == 2

    def test_ordered_by_entity_then_time(self, audit, clock):
        audit.log_changes([_change("M002")])
        clock.advance(minutes=1)
        audit.log_changes([_change("M001")])
        assert [c.entity_id for c in audit.changes()] == ["M001", "M002"]

    def test_mark_changes_synced(self, audit, clock):
        audit.log_changes(
            [_change(field="email"), _change(field="mobile")]
        )
        first = clock.advance(minutes=1)
        assert audit.mark_changes_synced("M001", ["email"]) == 1

        pending = audit.unsynced_changes()
        assert [c.field for c in pending] == ["mobile"]
        synced = [c for c in audit.changes() if c.field == "email"][0]
        assert synced.synced_at == first

    def test_already_synced_rows_untouched(self, audit, clock):
        audit.log_changes([_change(field="email")])
        first = clock.advance(minutes=1)
        audit.mark_changes_synced("M001", ["email"])
        clock.advance(minutes=1)
        assert audit.mark_changes_synced("M001", ["email"]) == 0
        assert audit.changes()[0].synced_at == first

    def test_empty_field_list(self, audit):
        assert audit.mark_changes_synced("M001", []) == 0
