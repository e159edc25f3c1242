"""Tests for field-level conflict resolution."""

import pytest

from member_sync.errors import ConflictResolutionFailure
from member_sync.sync.audit import AuditLog
from member_sync.sync.models import FieldTimestamps, ResolutionReason, Side
from member_sync.sync.resolver import ConflictResolver, compare_timestamps

T0 = "2026-01-10T10:00:00Z"
T0_PLUS_3S = "2026-01-10T10:00:03Z"
T0_PLUS_1H = "2026-01-10T11:00:00Z"


def _resolve(resolver, up, down, up_ts=None, down_ts=None, field="email"):
    return resolver.resolve(
        "M001",
        {field: up},
        {field: down},
        {
            field: FieldTimestamps(
                field=field,
                upstream_modified=up_ts,
                downstream_modified=down_ts,
            )
        },
        fields=[field],
    )


# ---------------------------------------------------------------------------
# compare_timestamps
# ---------------------------------------------------------------------------


class TestCompareTimestamps:
    """Tests for timestamp ordering."""

    def test_newer_older_equal(self):
        assert compare_timestamps(T0_PLUS_1H, T0) == 1
        assert compare_timestamps(T0, T0_PLUS_1H) == -1
        assert compare_timestamps(T0, T0) == 0

    def test_within_tolerance_is_equal(self):
        assert compare_timestamps(T0_PLUS_3S, T0, tolerance_ms=5000) == 0

    def test_missing_is_infinitely_old(self):
        assert compare_timestamps(None, T0) == -1
        assert compare_timestamps(T0, None) == 1
        assert compare_timestamps(None, None) == 0

    def test_offsets_normalized(self):
        assert compare_timestamps("2026-01-10T12:00:00+02:00", T0) == 0


# ---------------------------------------------------------------------------
# Resolution cases
# ---------------------------------------------------------------------------


class TestResolve:
    """Tests for the six resolution cases."""

    def test_both_null_upstream_wins(self):
        result = _resolve(ConflictResolver(), "a@ex.org", "b@ex.org")
        res = result.resolutions["email"]
        assert res.winner is Side.UPSTREAM
        assert res.reason is ResolutionReason.BOTH_NULL_DEFAULT
        assert res.value == "a@ex.org"
        assert result.conflicts == []

    def test_only_upstream_history(self):
        res = _resolve(
            ConflictResolver(), "a", "b", up_ts=T0
        ).resolutions["email"]
        assert res.winner is Side.UPSTREAM
        assert res.reason is ResolutionReason.ONLY_A_HAS_HISTORY

    def test_only_downstream_history(self):
        res = _resolve(
            ConflictResolver(), "a", "b", down_ts=T0
        ).resolutions["email"]
        assert res.winner is Side.DOWNSTREAM
        assert res.reason is ResolutionReason.ONLY_B_HAS_HISTORY
        assert res.value == "b"

    @pytest.mark.parametrize(
        "up_ts, down_ts", [(T0, T0_PLUS_3S), (T0_PLUS_3S, T0)]
    )
    def test_grace_period_is_symmetric(self, up_ts, down_ts):
        result = _resolve(ConflictResolver(), "a", "b", up_ts, down_ts)
        res = result.resolutions["email"]
        assert res.winner is Side.UPSTREAM
        assert res.reason is ResolutionReason.GRACE_PERIOD_DEFAULT
        assert result.conflicts == []

    def test_equal_values_no_conflict(self):
        result = _resolve(
            ConflictResolver(), "a@ex.org", "a@ex.org", T0, T0_PLUS_1H
        )
        res = result.resolutions["email"]
        assert res.winner is Side.BOTH
        assert res.reason is ResolutionReason.VALUES_MATCH
        assert result.conflicts == []

    def test_values_compared_normalized(self):
        res = _resolve(
            ConflictResolver(),
            True,
            "1",
            T0,
            T0_PLUS_1H,
            field="financial_block",
        ).resolutions["financial_block"]
        assert res.reason is ResolutionReason.VALUES_MATCH

    def test_downstream_newer_wins(self):
        result = _resolve(ConflictResolver(), "a", "b", T0, T0_PLUS_1H)
        res = result.resolutions["email"]
        assert res.winner is Side.DOWNSTREAM
        assert res.reason is ResolutionReason.B_NEWER
        assert res.value == "b"
        assert len(result.conflicts) == 1
        assert result.downstream_wins == ["email"]

    def test_upstream_newer_wins(self):
        result = _resolve(ConflictResolver(), "a", "b", T0_PLUS_1H, T0)
        res = result.resolutions["email"]
        assert res.winner is Side.UPSTREAM
        assert res.reason is ResolutionReason.A_NEWER
        assert result.winning_values == {"email": "a"}

    def test_zero_grace_period(self):
        result = _resolve(
            ConflictResolver(grace_ms=0), "a", "b", T0, T0_PLUS_3S
        )
        assert result.resolutions["email"].reason is ResolutionReason.B_NEWER

    def test_negative_grace_rejected(self):
        with pytest.raises(ValueError):
            ConflictResolver(grace_ms=-1)

    def test_malformed_timestamp(self):
        with pytest.raises(ConflictResolutionFailure) as exc_info:
            _resolve(ConflictResolver(), "a", "b", "yesterday", T0)
        assert exc_info.value.field == "email"
        assert exc_info.value.entity_id == "M001"

    def test_missing_timestamps_default_to_null(self):
        result = ConflictResolver().resolve(
            "M001", {"email": "a"}, {"email": "b"}, {}, fields=["email"]
        )
        reason = result.resolutions["email"].reason
        assert reason is ResolutionReason.BOTH_NULL_DEFAULT

    def test_every_tracked_field_resolved(self):
        result = ConflictResolver().resolve("M001", {}, {}, {})
        assert set(result.resolutions) == set(ConflictResolver().fields)


class TestConflictAudit:
    """Only genuine conflicts reach the audit log, and only via record()."""

    def test_resolve_has_no_side_effects(self, db):
        audit = AuditLog(db)
        result = _resolve(
            ConflictResolver(audit=audit), "a", "b", T0, T0_PLUS_1H
        )
        assert len(result.conflicts) == 1
        assert result.conflicts[0].resolved_at is None
        assert audit.conflict_count() == 0

    def test_genuine_conflict_recorded(self, db, clock):
        audit = AuditLog(db, clock=clock)
        resolver = ConflictResolver(audit=audit)
        stored = resolver.record(
            _resolve(resolver, "a", "b", T0, T0_PLUS_1H)
        )

        records = audit.conflicts()
        assert records == stored
        assert len(records) == 1
        record = records[0]
        assert record.entity_id == "M001"
        assert record.field == "email"
        assert record.upstream_value == "a"
        assert record.downstream_value == "b"
        assert record.upstream_modified == T0
        assert record.downstream_modified == T0_PLUS_1H
        assert record.winner is Side.DOWNSTREAM
        assert record.resolved_at == clock()

    def test_record_without_audit_log(self):
        resolver = ConflictResolver()
        result = _resolve(resolver, "a", "b", T0, T0_PLUS_1H)
        assert resolver.record(result) == result.conflicts

    @pytest.mark.parametrize(
        "up_ts, down_ts, down",
        [
            (None, None, "b"),
            (T0, None, "b"),
            (None, T0, "b"),
            (T0, T0_PLUS_3S, "b"),
            (T0, T0_PLUS_1H, "a"),
        ],
    )
    def test_other_cases_not_recorded(self, db, up_ts, down_ts, down):
        audit = AuditLog(db)
        resolver = ConflictResolver(audit=audit)
        resolver.record(_resolve(resolver, "a", down, up_ts, down_ts))
        assert audit.conflict_count() == 0
