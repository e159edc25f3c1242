"""Operator command line for member-sync.

Configuration precedence follows ``config.load_config()``:
CLI args > env vars (.env loaded first) > YAML config > defaults.
Reports go to stdout, logs to stderr.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from . import __version__
from .config import Config, load_config
from .config_loader import ensure_config, load_hierarchical_config
from .config_schema import UnifiedConfig, build_config
from .core import ProfileStoreClient
from .errors import MemberSyncError
from .logger import setup_logging
from .sync import (
    AuditLog,
    ConflictResolver,
    ListItem,
    ListReconciler,
    ListSyncEngine,
    ReverseChangeDetector,
    SyncEngine,
    SyncPolicy,
    SyncReport,
    SyncStateTracker,
    format_change_summary,
    format_conflict_summary,
    format_dry_run_preview,
    format_sync_report,
    open_db,
    report_to_json,
)
from .sync.schema import LIST_TABLES, schema_version

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="member-sync",
        description="Sync upstream member records into the profile store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the state database
  member-sync init-db

  # Preview, then run a forward sync from a snapshot file
  member-sync sync --snapshot members.json --dry-run
  member-sync sync --snapshot members.json

  # Reconcile committee history
  member-sync sync-lists --snapshot committees.yml

  # Find edits made directly in the profile store
  member-sync detect
        """,
    )
    parser.add_argument("--url", help="Override profile store URL")
    parser.add_argument("--username", help="Override profile store username")
    parser.add_argument(
        "--password",
        help="Override profile store password "
        "(visible in process list -- prefer PROFILE_STORE_PASSWORD)",
    )
    parser.add_argument("--db", help="State database path")
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Log line format (default: text)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"member-sync version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-config", help="Write a starter config file")
    sub.add_parser("init-db", help="Create or migrate the state database")
    sub.add_parser("status", help="Show tracked entity counts")

    sync = sub.add_parser("sync", help="Forward sync a snapshot")
    sync.add_argument(
        "--snapshot",
        required=True,
        type=Path,
        help="JSON/YAML file holding a list of upstream records",
    )
    sync.add_argument(
        "--kind",
        choices=("member", "parent"),
        default="member",
        help="Entity kind in the snapshot (default: member)",
    )
    sync.add_argument(
        "--partial",
        action="store_true",
        help="Snapshot is a subset; do not flag missing entities as former",
    )
    _add_run_flags(sync)

    lists = sub.add_parser("sync-lists", help="Reconcile a list field")
    lists.add_argument(
        "--snapshot",
        required=True,
        type=Path,
        help="JSON/YAML file with 'group_ids' and 'memberships'",
    )
    lists.add_argument(
        "--field",
        choices=sorted(LIST_TABLES),
        default="committee_history",
        help="List field to reconcile (default: committee_history)",
    )
    lists.add_argument(
        "--backfill",
        action="store_true",
        help="New entries are backfill (no start date)",
    )
    _add_run_flags(lists)

    detect = sub.add_parser("detect", help="Detect downstream edits")
    detect.add_argument("--since", help="Override the stored checkpoint")

    conflicts = sub.add_parser("conflicts", help="List resolved conflicts")
    conflicts.add_argument("--since", help="Only conflicts after this time")
    conflicts.add_argument("--member", help="Only this identity")

    changes = sub.add_parser("changes", help="List detected changes")
    changes.add_argument(
        "--unsynced", action="store_true", help="Only unconsumed changes"
    )

    ack = sub.add_parser(
        "ack-changes",
        help="Record that detected changes were applied upstream",
    )
    ack.add_argument("identity")
    ack.add_argument("fields", nargs="+")

    return parser


def _add_run_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--force", action="store_true", help="Resync everything"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Preview without writing"
    )
    parser.add_argument(
        "--json", action="store_true", help="Print the report as JSON"
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_unified() -> UnifiedConfig:
    return build_config(load_hierarchical_config())


def _client_config(args: argparse.Namespace, unified: UnifiedConfig) -> Config:
    yaml_fallbacks = {
        k: v
        for k, v in unified.downstream.model_dump().items()
        if v is not None
    }
    return load_config(
        url=args.url,
        username=args.username,
        password=args.password,
        debug=args.debug,
        yaml_fallbacks=yaml_fallbacks,
    )


def _load_snapshot(path: Path) -> Any:
    """Read a JSON or YAML snapshot file (JSON parses as YAML)."""
    with open(path, "r", encoding="utf-8") as fh:
        return yaml.safe_load(fh)


def _print_report(report: SyncReport, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report_to_json(report), indent=2))
    elif report.dry_run:
        print(format_dry_run_preview(report))
    else:
        print(format_sync_report(report))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init_config(args, unified, con) -> int:
    print(f"Config file: {ensure_config()}")
    return 0


def cmd_init_db(args, unified, con) -> int:
    print(f"Schema version: {schema_version(con)}")
    return 0


def cmd_status(args, unified, con) -> int:
    for kind in ("member", "parent"):
        counts = SyncStateTracker(con, kind=kind).counts()
        print(
            f"{kind}s: {counts['total']} tracked, {counts['dirty']} dirty, "
            f"{counts['linked']} linked, {counts['former']} former"
        )
    audit = AuditLog(con)
    tracker = SyncStateTracker(con)
    checkpoint = ReverseChangeDetector(tracker, audit).get_checkpoint()
    print(f"conflicts: {audit.conflict_count()}")
    print(f"unsynced changes: {len(audit.unsynced_changes())}")
    print(f"detection checkpoint: {checkpoint or 'never run'}")
    return 0


def cmd_sync(args, unified, con) -> int:
    records = _load_snapshot(args.snapshot)
    if not isinstance(records, list):
        raise MemberSyncError(
            f"Snapshot {args.snapshot} must contain a list of records"
        )

    tracked = unified.sync.tracked_fields
    audit = AuditLog(con)
    tracker = SyncStateTracker(con, kind=args.kind, tracked_fields=tracked)
    resolver = ConflictResolver(
        grace_ms=unified.sync.grace_period_ms,
        audit=None if args.dry_run else audit,
        fields=tracked,
    )
    client = ProfileStoreClient(_client_config(args, unified))
    report = SyncEngine(tracker, resolver, client).run(
        records,
        policy=SyncPolicy(force_all=args.force),
        dry_run=args.dry_run,
        complete_snapshot=not args.partial,
    )

    _print_report(report, args.json)
    if not args.json and not args.dry_run:
        summary = format_conflict_summary(
            audit.conflicts(since=report.started_at)
        )
        if summary:
            print()
            print(summary)
    return 0 if not report.errors else 1


def cmd_sync_lists(args, unified, con) -> int:
    data = _load_snapshot(args.snapshot) or {}
    if not isinstance(data, dict):
        raise MemberSyncError(
            f"Snapshot {args.snapshot} must map 'group_ids' and "
            "'memberships'"
        )
    group_ids = {
        str(name): int(gid)
        for name, gid in (data.get("group_ids") or {}).items()
    }
    memberships = {
        str(identity): [ListItem.model_validate(item) for item in items]
        for identity, items in (data.get("memberships") or {}).items()
    }

    tracker = SyncStateTracker(
        con, tracked_fields=unified.sync.tracked_fields
    )
    reconciler = ListReconciler(con, list_field=args.field)
    client = ProfileStoreClient(_client_config(args, unified))
    report = ListSyncEngine(reconciler, tracker, client).run(
        group_ids,
        memberships=memberships,
        policy=SyncPolicy(force_all=args.force),
        dry_run=args.dry_run,
        is_backfill=args.backfill,
    )
    _print_report(report, args.json)
    return 0 if not report.errors else 1


def cmd_detect(args, unified, con) -> int:
    tracker = SyncStateTracker(
        con, tracked_fields=unified.sync.tracked_fields
    )
    detector = ReverseChangeDetector(
        tracker,
        AuditLog(con),
        default_since=unified.sync.detection_start,
    )
    client = ProfileStoreClient(_client_config(args, unified))
    changes = detector.detect(client.list_modified_people, since=args.since)
    print(format_change_summary(changes))
    return 0


def cmd_conflicts(args, unified, con) -> int:
    conflicts = AuditLog(con).conflicts(
        since=args.since, entity_id=args.member
    )
    print(format_conflict_summary(conflicts) or "No conflicts recorded.")
    return 0


def cmd_changes(args, unified, con) -> int:
    changes = AuditLog(con).changes(unsynced_only=args.unsynced)
    print(format_change_summary(changes))
    return 0


def cmd_ack_changes(args, unified, con) -> int:
    tracker = SyncStateTracker(
        con, tracked_fields=unified.sync.tracked_fields
    )
    if tracker.get(args.identity) is None:
        raise MemberSyncError(f"Unknown member identity: {args.identity}")
    count = AuditLog(con).mark_changes_synced(args.identity, args.fields)
    tracker.record_reverse_sync(args.identity, args.fields)
    print(f"Marked {count} change(s) for {args.identity} as synced")
    return 0


COMMANDS = {
    "init-config": cmd_init_config,
    "init-db": cmd_init_db,
    "status": cmd_status,
    "sync": cmd_sync,
    "sync-lists": cmd_sync_lists,
    "detect": cmd_detect,
    "conflicts": cmd_conflicts,
    "changes": cmd_changes,
    "ack-changes": cmd_ack_changes,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Run one command and return its exit code."""
    args = build_parser().parse_args(argv)

    # .env first, so ${VAR} interpolation in YAML can use its values
    load_dotenv()

    try:
        unified = _load_unified()
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        return 2

    setup_logging(
        debug=args.debug,
        log_file=args.log_file or unified.logging.file,
        debug_format=args.log_format,
        level=unified.logging.level,
    )

    if args.command == "init-config":
        return cmd_init_config(args, unified, None)

    db_path = Path(args.db or unified.sync.database).expanduser()
    con = open_db(db_path)
    try:
        return COMMANDS[args.command](args, unified, con)
    except (MemberSyncError, ValueError, OSError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        con.close()


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
