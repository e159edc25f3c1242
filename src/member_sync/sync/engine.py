"""Sync engines that drive one pass over a snapshot.

``SyncEngine`` runs the forward member/parent sync:

1. Validates the upstream snapshot (records without identity are skipped).
2. Records the snapshot with ``upsert_observed`` and flags missing entities
   as former.
3. For every dirty entity, in identity order: fetches the downstream
   record, resolves field conflicts and writes the merged record.  Only
   after the write succeeds are the conflicts audited, the mirror recorded
   and the fingerprint marked synced, in one transaction.

``ListSyncEngine`` runs one list field (team or committee history) through
``ListReconciler``: fetch the remote array, reconcile, write the whole array,
then commit the positions.

Error handling is per entity: one failure is recorded on the report and the
run moves on.  A downstream "not found" clears the remote id so the entity is
recreated (immediately on the read path, on the next run on the write path).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from pydantic import ValidationError as PydanticValidationError

from ..errors import RemoteNotFound, ValidationError
from .fields import (
    apply_resolutions,
    extract_field_value,
    extract_tracked_values,
)
from .fingerprint import fingerprint
from .lists import ListReconciler
from .models import (
    EntityResult,
    ListItem,
    SyncAction,
    SyncOrigin,
    SyncPolicy,
    SyncReport,
    TrackedEntity,
)
from .resolver import ConflictResolver
from .schema import transaction
from .state import SyncStateTracker
from .timeutil import utc_now

logger = logging.getLogger(__name__)


class ProfileStore(Protocol):
    """Downstream operations the engines need.

    Records are mappings with ``id``, ``modified`` and ``fields``.
    """

    def get_person(self, remote_id: int) -> dict[str, Any]:
        ...  # pragma: no cover

    def create_person(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        ...  # pragma: no cover

    def update_person(
        self, remote_id: int, fields: Mapping[str, Any]
    ) -> dict[str, Any]:
        ...  # pragma: no cover


class SyncEngine:
    """Forward sync of one entity kind.

    Args:
        tracker: State tracker for the entity kind.
        resolver: Field conflict resolver.
        client: Downstream profile store.
    """

    def __init__(
        self,
        tracker: SyncStateTracker,
        resolver: ConflictResolver,
        client: ProfileStore,
    ) -> None:
        self.tracker = tracker
        self.resolver = resolver
        self.client = client

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(
        self,
        records: Iterable[Any],
        policy: SyncPolicy | None = None,
        dry_run: bool = False,
        complete_snapshot: bool = True,
    ) -> SyncReport:
        """Sync a snapshot of upstream records.

        Args:
            records: Upstream records (typed records or mappings).
            policy: ``force_all`` resyncs every tracked entity.
            dry_run: Report what would happen without writing anything,
                locally or downstream.
            complete_snapshot: *records* is the full upstream population,
                so tracked entities missing from it are flagged former.

        Returns:
            A ``SyncReport`` with one result per processed entity.
        """
        policy = policy or SyncPolicy()
        started_at = utc_now()
        results: list[EntityResult] = []

        valid = []
        for raw in records:
            try:
                valid.append(self._validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping invalid record: %s", exc)
                results.append(
                    EntityResult(
                        identity=exc.identity or "<unknown>",
                        action=SyncAction.SKIP,
                        success=False,
                        error=str(exc),
                    )
                )

        if dry_run:
            results.extend(self._preview(valid, policy))
            return SyncReport(
                run_name=f"{self.tracker.kind}s",
                dry_run=True,
                results=results,
                started_at=started_at,
                completed_at=utc_now(),
            )

        self.tracker.upsert_observed(valid)
        if complete_snapshot:
            self.tracker.mark_former(r.identity for r in valid)

        pending = self.tracker.entities_needing_sync(policy)
        logger.info(
            "%d %s(s) need a sync pass", len(pending), self.tracker.kind
        )
        for entity in pending:
            try:
                results.append(self._sync_entity(entity))
            except Exception as exc:
                logger.error("Error syncing %s: %s", entity.identity, exc)
                results.append(
                    EntityResult(
                        identity=entity.identity,
                        action=(
                            SyncAction.UPDATE
                            if entity.remote_id is not None
                            else SyncAction.CREATE
                        ),
                        success=False,
                        error=str(exc),
                        remote_id=entity.remote_id,
                    )
                )

        return SyncReport(
            run_name=f"{self.tracker.kind}s",
            results=results,
            started_at=started_at,
            completed_at=utc_now(),
        )

    # ------------------------------------------------------------------
    # Per-entity sync
    # ------------------------------------------------------------------

    def _sync_entity(self, entity: TrackedEntity) -> EntityResult:
        """Write one dirty entity downstream and confirm it."""
        identity = entity.identity
        fields = self.tracker.get_record(identity).to_profile_fields()
        tracked = self.tracker.tracked_fields

        remote_id = entity.remote_id
        existing: dict[str, Any] | None = None
        if remote_id is not None:
            try:
                existing = self.client.get_person(remote_id)
            except RemoteNotFound:
                self.tracker.mark_remote_missing(identity)
                remote_id = None

        if remote_id is None:
            created = self.client.create_person(fields)
            new_id = int(created["id"])
            with transaction(self.tracker.connection):
                self.tracker.record_mirror(
                    identity,
                    extract_tracked_values(fields, tracked),
                    SyncOrigin.FORWARD_SYNC,
                )
                self.tracker.mark_synced(
                    identity, entity.source_fingerprint, new_id
                )
            logger.info(
                "Created %s %s as %d", self.tracker.kind, identity, new_id
            )
            return EntityResult(
                identity=identity, action=SyncAction.CREATE, remote_id=new_id
            )

        downstream_fields = (existing or {}).get("fields") or {}
        resolution = self.resolver.resolve(
            identity,
            {name: extract_field_value(fields, name) for name in tracked},
            {
                name: extract_field_value(downstream_fields, name)
                for name in tracked
            },
            self.tracker.field_timestamps(identity),
        )
        payload = apply_resolutions(fields, resolution.winning_values)

        try:
            self.client.update_person(remote_id, payload)
        except RemoteNotFound:
            self.tracker.mark_remote_missing(identity)
            raise

        with transaction(self.tracker.connection):
            self.resolver.record(resolution)
            self.tracker.record_mirror(
                identity,
                extract_tracked_values(payload, tracked),
                SyncOrigin.FORWARD_SYNC,
            )
            self.tracker.mark_synced(
                identity, entity.source_fingerprint, remote_id
            )
        if resolution.downstream_wins:
            logger.info(
                "Kept downstream value for %s: %s",
                identity,
                ", ".join(resolution.downstream_wins),
            )
        return EntityResult(
            identity=identity, action=SyncAction.UPDATE, remote_id=remote_id
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _validate(self, raw: Any) -> Any:
        record_type = self.tracker.record_type
        if isinstance(raw, record_type):
            return raw
        identity = raw.get("identity") if isinstance(raw, Mapping) else None
        if not identity:
            raise ValidationError("Record has no identity")
        try:
            return record_type.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid {self.tracker.kind} record {identity}: "
                f"{exc.error_count()} validation error(s)",
                identity=identity,
            ) from exc

    def _preview(
        self, records: list[Any], policy: SyncPolicy
    ) -> list[EntityResult]:
        """Results a real run would produce, computed without writes."""
        results = []
        for record in sorted(records, key=lambda r: r.identity):
            entity = self.tracker.get(record.identity)
            new_fp = fingerprint(record.identity, record.to_canonical())
            if (
                not policy.force_all
                and entity is not None
                and entity.last_synced_fingerprint == new_fp
            ):
                continue
            remote_id = entity.remote_id if entity else None
            results.append(
                EntityResult(
                    identity=record.identity,
                    action=(
                        SyncAction.CREATE
                        if remote_id is None
                        else SyncAction.UPDATE
                    ),
                    remote_id=remote_id,
                )
            )
        return results


class ListSyncEngine:
    """Sync one list-valued field for every entity that needs it.

    Args:
        reconciler: Reconciler of the list field.
        tracker: Member tracker, used to look up remote ids.
        client: Downstream profile store.
    """

    def __init__(
        self,
        reconciler: ListReconciler,
        tracker: SyncStateTracker,
        client: ProfileStore,
    ) -> None:
        self.reconciler = reconciler
        self.tracker = tracker
        self.client = client

    def run(
        self,
        group_ids: Mapping[str, int],
        memberships: Mapping[str, Iterable[ListItem]] | None = None,
        policy: SyncPolicy | None = None,
        dry_run: bool = False,
        is_backfill: bool = False,
    ) -> SyncReport:
        """Reconcile the list field of every entity that needs it.

        Args:
            group_ids: Downstream id per group name.
            memberships: Complete desired memberships per identity.  When
                given, it replaces the recorded desired sets first;
                identities absent from it lose all their memberships.
            policy: ``force_all`` refreshes unchanged items in place.
            dry_run: Plan only; nothing is written.
            is_backfill: Newly recorded memberships are backfill entries.
        """
        policy = policy or SyncPolicy()
        started_at = utc_now()
        results: list[EntityResult] = []

        if memberships is not None and not dry_run:
            for identity in sorted(
                set(memberships) | set(self.reconciler.identities())
            ):
                self.reconciler.upsert_observed(
                    identity, memberships.get(identity, []), is_backfill
                )

        for identity in self.reconciler.entities_needing_sync(policy):
            try:
                results.append(
                    self._sync_list(identity, group_ids, policy, dry_run)
                )
            except Exception as exc:
                logger.error(
                    "Error syncing %s for %s: %s",
                    self.reconciler.list_field,
                    identity,
                    exc,
                )
                results.append(
                    EntityResult(
                        identity=identity,
                        action=SyncAction.UPDATE,
                        success=False,
                        error=str(exc),
                    )
                )

        return SyncReport(
            run_name=self.reconciler.list_field,
            dry_run=dry_run,
            results=results,
            started_at=started_at,
            completed_at=utc_now(),
        )

    def _sync_list(
        self,
        identity: str,
        group_ids: Mapping[str, int],
        policy: SyncPolicy,
        dry_run: bool,
    ) -> EntityResult:
        entity = self.tracker.get(identity)
        if entity is None or entity.remote_id is None:
            logger.debug("Skipping %s: no downstream record yet", identity)
            return EntityResult(identity=identity, action=SyncAction.SKIP)

        remote_id = entity.remote_id
        try:
            person = self.client.get_person(remote_id)
        except RemoteNotFound:
            self.tracker.mark_remote_missing(identity)
            raise

        field = self.reconciler.list_field
        remote_array = (person.get("fields") or {}).get(field) or []
        plan = self.reconciler.reconcile(
            identity, remote_array, group_ids, policy
        )
        action = (
            SyncAction.UPDATE if plan.has_changes else SyncAction.UNCHANGED
        )
        if dry_run:
            return EntityResult(
                identity=identity, action=action, remote_id=remote_id
            )

        if plan.has_changes:
            self.client.update_person(remote_id, {field: plan.array})
        self.reconciler.commit(plan)
        return EntityResult(
            identity=identity, action=action, remote_id=remote_id
        )
