"""Integration tests for the sync pipelines.

Runs members, parents, committee history and reverse detection against one
state database and an in-memory profile store.

Live profile store tests (gated by ``--run-live``) exercise the REST client
against a real instance, read-only.
"""

from __future__ import annotations

import os

import pytest

from conftest import member
from member_sync.config import Config
from member_sync.core.client import ProfileStoreClient
from member_sync.sync import (
    AuditLog,
    ConflictResolver,
    ListItem,
    ListReconciler,
    ListSyncEngine,
    ReverseChangeDetector,
    SyncEngine,
    SyncStateTracker,
)

GROUP_IDS = {"Board": 10, "Youth": 20}


def _pipelines(db, clock, store):
    audit = AuditLog(db, clock=clock)
    members = SyncStateTracker(db, kind="member", clock=clock)
    parents = SyncStateTracker(db, kind="parent", clock=clock)
    return {
        "audit": audit,
        "members": SyncEngine(
            members, ConflictResolver(audit=audit), store
        ),
        "parents": SyncEngine(
            parents, ConflictResolver(audit=audit), store
        ),
        "committees": ListSyncEngine(
            ListReconciler(
                db,
                list_field="committee_history",
                clock=clock,
                date_source=lambda: "2026-03-01",
            ),
            members,
            store,
        ),
        "detector": ReverseChangeDetector(members, audit, clock=clock),
    }


class TestFullRun:
    """Every pipeline over the same inputs, twice."""

    MEMBERS = [member("M001"), member("M002", first_name="Bram")]
    PARENTS = [{"identity": "P001", "name": "Jan", "children": ["M002"]}]
    COMMITTEES = {
        "M001": [ListItem(group_name="Board", role_name="Chair")],
        "M002": [ListItem(group_name="Youth")],
    }

    def _run_all(self, p, store):
        reports = [
            p["members"].run(self.MEMBERS),
            p["parents"].run(self.PARENTS),
            p["committees"].run(GROUP_IDS, self.COMMITTEES),
        ]
        changes = p["detector"].detect(store.list_modified_people)
        return reports, changes

    def test_second_run_is_a_no_op(self, db, clock, store):
        p = _pipelines(db, clock, store)

        reports, changes = self._run_all(p, store)
        assert [len(r.results) for r in reports] == [2, 1, 2]
        assert all(r.ok for r in reports)
        assert changes == []
        writes = len(store.writes())

        clock.advance(minutes=5)
        reports, changes = self._run_all(p, store)
        assert [r.results for r in reports] == [[], [], []]
        assert changes == []
        assert len(store.writes()) == writes

    def test_human_edit_survives_next_forward_run(self, db, clock, store):
        p = _pipelines(db, clock, store)
        self._run_all(p, store)

        edited_at = clock.advance(minutes=10)
        store.human_edit(1002, edited_at, mobile="0687654321")
        clock.advance(minutes=5)
        [change] = p["detector"].detect(store.list_modified_people)
        assert (change.entity_id, change.field) == ("M002", "mobile")

        clock.advance(minutes=5)
        updated = [dict(m) for m in self.MEMBERS]
        updated[1]["city"] = "Amersfoort"
        report = p["members"].run(updated)

        assert [r.identity for r in report.updated] == ["M002"]
        contacts = store.people[1002]["fields"]["contact_info"]
        mobile = [c for c in contacts if c["contact_type"] == "mobile"]
        assert mobile[0]["contact_value"] == "0687654321"
        assert p["audit"].conflict_count() == 0


# ===================================================================
# Live profile store (gated by --run-live)
# ===================================================================


@pytest.mark.live
class TestLiveProfileStore:
    """Read-only checks against a real profile store.

    Requires ``--run-live`` and PROFILE_STORE_* environment variables.
    """

    @pytest.fixture
    def live_client(self):
        url = os.environ.get("PROFILE_STORE_URL", "")
        if not url:
            pytest.skip("PROFILE_STORE_URL not set")
        config = Config(
            profile_store_url=url,
            username=os.environ.get("PROFILE_STORE_USERNAME", ""),
            password=os.environ.get("PROFILE_STORE_PASSWORD", ""),
        )
        return ProfileStoreClient(config)

    def test_list_and_fetch(self, live_client):
        people = live_client.list_modified_people(
            "2020-01-01T00:00:00Z", per_page=5
        )
        first = next(iter(people), None)
        if first is None:
            pytest.skip("profile store has no people")
        fetched = live_client.get_person(first["id"])
        assert fetched["id"] == first["id"]
        assert isinstance(fetched["fields"], dict)
