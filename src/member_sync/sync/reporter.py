"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync operations:

- ``format_sync_report`` -- full post-sync summary.
- ``format_dry_run_preview`` -- dry-run preview grouped by action.
- ``format_conflict_summary`` -- conflicts resolved during a run.
- ``format_change_summary`` -- downstream edits found by detection.
- ``report_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from .models import SyncAction

if TYPE_CHECKING:
    from .models import ChangeRecord, ConflictRecord, SyncReport

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one result.
    Unchanged and skipped entities are summarised by count only.

    Args:
        report: The completed sync report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Sync report for '{report.run_name}'"
    if report.dry_run:
        header += " (DRY RUN)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    lines.append(
        f"Processed {len(report.results)} records: "
        f"{len(report.created)} created, {len(report.updated)} updated, "
        f"{len(report.unchanged)} unchanged, "
        f"{len(report.failed)} failed"
    )
    lines.append("")

    if report.created:
        lines.append("Created:")
        for r in report.created:
            lines.append(f"  {r.identity} -> {_remote(r.remote_id)}")
        lines.append("")

    if report.updated:
        lines.append("Updated:")
        for r in report.updated:
            lines.append(f"  {r.identity} -> {_remote(r.remote_id)}")
        lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {r.identity}: {r.error}")
        lines.append("")

    if report.skipped:
        lines.append(f"Skipped: {len(report.skipped)} records")
        lines.append("")

    return "\n".join(lines).rstrip()


def _remote(remote_id: int | None) -> str:
    return f"#{remote_id}" if remote_id is not None else "(pending)"


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_dry_run_preview(report: SyncReport) -> str:
    """Format a dry-run preview grouped by action type.

    Args:
        report: A dry-run sync report (``dry_run=True``).

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Run: {report.run_name}")
    lines.append("")

    groups: dict[SyncAction, list[str]] = defaultdict(list)
    for r in report.results:
        groups[r.action].append(r.identity)

    for action in (SyncAction.CREATE, SyncAction.UPDATE):
        if action not in groups:
            continue
        lines.append(f"[{action.value.upper()}]")
        for identity in groups[action]:
            lines.append(f"  {identity}")
        lines.append("")

    skip_count = len(groups.get(SyncAction.SKIP, []))
    if skip_count > 0:
        lines.append(f"Skipped: {skip_count} records (invalid)")
        lines.append("")

    if not (groups.get(SyncAction.CREATE) or groups.get(SyncAction.UPDATE)):
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Conflicts and changes
# ------------------------------------------------------------------


def format_conflict_summary(conflicts: list[ConflictRecord]) -> str:
    """Summarise resolved conflicts, grouped by entity.

    Returns an empty string when there is nothing to report.
    """
    if not conflicts:
        return ""

    by_entity: dict[str, list[ConflictRecord]] = defaultdict(list)
    for c in conflicts:
        by_entity[c.entity_id].append(c)

    lines = [
        "CONFLICTS DETECTED AND RESOLVED",
        f"Total: {len(conflicts)} conflict(s) across "
        f"{len(by_entity)} member(s)",
        "",
    ]
    for entity_id in sorted(by_entity):
        lines.append(f"{entity_id}:")
        for c in by_entity[entity_id]:
            reason = c.reason.value.replace("_", " ")
            lines.append(
                f"  {c.field}: {c.winner.value} won ({reason})"
            )
            lines.append(
                f"    upstream={c.upstream_value!r} "
                f"downstream={c.downstream_value!r}"
            )
    return "\n".join(lines)


def format_change_summary(changes: list[ChangeRecord]) -> str:
    """List detected downstream edits, one line per field."""
    if not changes:
        return "No downstream changes detected."

    lines = [f"Detected {len(changes)} downstream change(s):"]
    for c in changes:
        status = "synced" if c.synced_at else "pending"
        lines.append(
            f"  {c.entity_id}.{c.field}: {c.old_value!r} -> "
            f"{c.new_value!r} [{status}]"
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a structured dict for JSON serialisation.

    Args:
        report: The sync report.

    Returns:
        Dict with run info, counts, and per-result details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "identity": r.identity,
            "action": r.action.value,
            "success": r.success,
        }
        if r.remote_id is not None:
            entry["remote_id"] = r.remote_id
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "run_name": report.run_name,
        "dry_run": report.dry_run,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": {
            "total": len(report.results),
            "created": len(report.created),
            "updated": len(report.updated),
            "unchanged": len(report.unchanged),
            "skipped": len(report.skipped),
            "failed": len(report.failed),
        },
        "results": results_list,
    }
