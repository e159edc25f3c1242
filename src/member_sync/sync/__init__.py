"""Member record sync and reconciliation engine.

Public API for pushing upstream member, parent and membership records into
a downstream profile store, and for noticing when people edit that store
directly.

Architecture
------------
Every upstream record is reduced to a SHA-256 **content fingerprint**.  An
entity needs a sync pass exactly when its current fingerprint differs from
the one recorded at its last confirmed sync, so unchanged data is never
re-sent.  Individual tracked fields carry upstream and downstream
modification timestamps; when both sides moved, the newer edit wins and the
decision is written to an audit log.

All state lives in one SQLite database.

Modules:

- ``fingerprint`` -- ``canonicalize``/``fingerprint``: deterministic hashes.
- ``schema``      -- tables, versioned migrations, ``open_db``.
- ``models``      -- upstream records, tracked state and report types.
- ``fields``      -- tracked field set and downstream field extraction.
- ``state``       -- ``SyncStateTracker``: fingerprints, remote ids and
  per-field timestamps.
- ``audit``       -- ``AuditLog``: conflict and change records.
- ``resolver``    -- ``ConflictResolver``: per-field last-writer-wins.
- ``detector``    -- ``ReverseChangeDetector``: downstream edit detection.
- ``lists``       -- ``ListReconciler``: team/committee history arrays.
- ``engine``      -- ``SyncEngine`` and ``ListSyncEngine``.
- ``reporter``    -- Human-readable and JSON report formatting.

Public exports
--------------
``open_db``, ``fingerprint``, ``SyncStateTracker``, ``AuditLog``,
``ConflictResolver``, ``ReverseChangeDetector``, ``ListReconciler``,
``SyncEngine``, ``ListSyncEngine``, the record and report models, and the
``format_*`` / ``report_to_json`` helpers.

Usage example
-------------
::

    from member_sync.core import ProfileStoreClient
    from member_sync.sync import (
        AuditLog,
        ConflictResolver,
        SyncEngine,
        SyncStateTracker,
        format_sync_report,
        open_db,
    )

    con = open_db("~/.local/share/member_sync/sync.db")
    tracker = SyncStateTracker(con, kind="member")
    resolver = ConflictResolver(grace_ms=5000, audit=AuditLog(con))
    engine = SyncEngine(tracker, resolver, ProfileStoreClient(config))

    # Preview first
    print(format_sync_report(engine.run(records, dry_run=True)))

    report = engine.run(records)
    print(format_sync_report(report))
"""

from .audit import AuditLog
from .detector import ReverseChangeDetector
from .engine import ListSyncEngine, SyncEngine
from .fingerprint import canonicalize, fingerprint
from .lists import ListReconciler
from .models import (
    ChangeRecord,
    ConflictRecord,
    EntityResult,
    ListItem,
    MemberRecord,
    ParentRecord,
    ResolutionReason,
    Side,
    SyncAction,
    SyncOrigin,
    SyncPolicy,
    SyncReport,
    TrackedEntity,
)
from .reporter import (
    format_change_summary,
    format_conflict_summary,
    format_dry_run_preview,
    format_sync_report,
    report_to_json,
)
from .resolver import ConflictResolver
from .schema import open_db
from .state import SyncStateTracker

__all__ = [
    "AuditLog",
    "ChangeRecord",
    "ConflictRecord",
    "ConflictResolver",
    "EntityResult",
    "ListItem",
    "ListReconciler",
    "ListSyncEngine",
    "MemberRecord",
    "ParentRecord",
    "ResolutionReason",
    "ReverseChangeDetector",
    "Side",
    "SyncAction",
    "SyncEngine",
    "SyncOrigin",
    "SyncPolicy",
    "SyncReport",
    "SyncStateTracker",
    "TrackedEntity",
    "canonicalize",
    "fingerprint",
    "format_change_summary",
    "format_conflict_summary",
    "format_dry_run_preview",
    "format_sync_report",
    "open_db",
    "report_to_json",
]
