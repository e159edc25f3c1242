"""Reconciliation of position-addressed list fields.

A list field (team history, committee history) is an ordered array on the
downstream profile.  Other records refer to its items by array index, so the
array is only ever extended or edited in place:

* new memberships are **appended** at the current array length,
* ended memberships are **soft-closed** in place (``is_current`` false,
  ``end_date`` set) and their tracking row dropped,
* unchanged memberships are left alone unless ``SyncPolicy.force_all`` asks
  for an in-place refresh.

A ``ListPosition`` row maps ``(identity, group, role)`` to its confirmed
``remote_index``.  A row without an index has never been written and counts
as not yet tracked.  ``reconcile()`` is pure planning; the caller writes the
planned array downstream and only then calls ``commit()``, so a crash
between the two leaves the positions unconfirmed and the pass is retried.
"""

from __future__ import annotations

import copy
import logging
import sqlite3
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from .fingerprint import fingerprint
from .models import ListItem, ListPlan, ListPosition, SyncPolicy
from .schema import LIST_TABLES, transaction
from .timeutil import today, utc_now

logger = logging.getLogger(__name__)


def position_fingerprint(identity: str, item: ListItem | ListPosition) -> str:
    """Fingerprint of the ``(entity, group, role, active)`` tuple."""
    return fingerprint(
        identity,
        {
            "group": item.group_name,
            "role": item.role_name,
            "is_active": item.is_active,
        },
    )


def build_entry(
    item: ListItem | ListPosition, group_id: int, is_backfill: bool = False
) -> dict[str, Any]:
    """Build the downstream array item for an active membership.

    Backfilled entries get an empty start date.
    """
    return {
        "role_title": item.role_name,
        "is_current": True,
        "start_date": "" if is_backfill else (item.start_date or ""),
        "end_date": "",
        "group_id": group_id,
    }


def _as_item(position: ListPosition) -> ListItem:
    return ListItem(
        group_name=position.group_name,
        role_name=position.role_name,
        is_active=position.is_active,
        start_date=position.start_date,
        end_date=position.end_date,
    )


class ListReconciler:
    """Track and reconcile one list-valued field.

    Args:
        con: Open, migrated SQLite connection.
        list_field: Key of ``LIST_TABLES`` (``team_history`` or
            ``committee_history``).
        clock: Returns the current time as an ISO 8601 string.
        date_source: Returns today's date as ``YYYY-MM-DD``.
    """

    def __init__(
        self,
        con: sqlite3.Connection,
        list_field: str = "committee_history",
        clock: Callable[[], str] = utc_now,
        date_source: Callable[[], str] = today,
    ) -> None:
        if list_field not in LIST_TABLES:
            raise ValueError(
                f"Unknown list field '{list_field}'. "
                f"Expected one of: {', '.join(sorted(LIST_TABLES))}"
            )
        self._con = con
        self.list_field = list_field
        self._table = LIST_TABLES[list_field]
        self._clock = clock
        self._today = date_source

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def upsert_observed(
        self,
        identity: str,
        items: Iterable[ListItem | Mapping[str, Any]],
        is_backfill: bool = False,
    ) -> int:
        """Replace the desired membership set of *identity*.

        Items in the set are inserted (unconfirmed) or updated.  Confirmed
        positions missing from the set are flagged inactive so the next
        reconcile soft-closes them; unconfirmed ones are dropped.

        Returns:
            Number of items in the new set.
        """
        desired = {
            item.key: item
            for item in (
                i if isinstance(i, ListItem) else ListItem.model_validate(i)
                for i in items
            )
        }
        now = self._clock()

        with transaction(self._con):
            for item in desired.values():
                self._con.execute(
                    f"""
                    INSERT INTO {self._table} (
                        identity, group_name, role_name, is_active,
                        start_date, end_date, fingerprint, is_backfill,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(identity, group_name, role_name) DO UPDATE SET
                        is_active = excluded.is_active,
                        start_date = excluded.start_date,
                        end_date = excluded.end_date,
                        fingerprint = excluded.fingerprint
                    """,
                    (
                        identity,
                        item.group_name,
                        item.role_name,
                        int(item.is_active),
                        item.start_date,
                        item.end_date,
                        position_fingerprint(identity, item),
                        int(is_backfill),
                        now,
                    ),
                )

            for position in self.positions(identity):
                if position.key in desired:
                    continue
                if position.is_confirmed:
                    if position.is_active:
                        self._deactivate(position)
                else:
                    self._delete(position)

        return len(desired)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def positions(self, identity: str) -> list[ListPosition]:
        """All tracked positions of *identity*, by group then role."""
        rows = self._con.execute(
            f"SELECT * FROM {self._table} WHERE identity = ? "
            "ORDER BY group_name, role_name",
            (identity,),
        )
        return [self._to_position(r) for r in rows]

    def identities(self) -> list[str]:
        """Every identity with at least one tracked position, sorted."""
        rows = self._con.execute(
            f"SELECT DISTINCT identity FROM {self._table} ORDER BY identity"
        )
        return [r["identity"] for r in rows]

    def entities_needing_sync(
        self, policy: SyncPolicy | None = None
    ) -> list[str]:
        """Identities whose list needs a reconcile pass, sorted.

        An identity qualifies when an active position is unconfirmed or a
        confirmed position changed since its last sync.  ``force_all``
        returns every identity with positions.
        """
        policy = policy or SyncPolicy()
        if policy.force_all:
            query = (
                f"SELECT DISTINCT identity FROM {self._table} "
                "ORDER BY identity"
            )
        else:
            query = f"""
                SELECT DISTINCT identity FROM {self._table}
                WHERE (remote_index IS NULL AND is_active = 1)
                   OR (remote_index IS NOT NULL
                       AND (last_synced_fingerprint IS NULL
                            OR last_synced_fingerprint != fingerprint))
                ORDER BY identity
            """
        return [r["identity"] for r in self._con.execute(query)]

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self,
        identity: str,
        remote_array: Sequence[Mapping[str, Any]],
        group_ids: Mapping[str, int],
        policy: SyncPolicy | None = None,
        desired: Iterable[ListItem] | None = None,
        backfill: bool = False,
    ) -> ListPlan:
        """Plan the new remote array for *identity*.  Writes nothing.

        Args:
            identity: Entity whose list is reconciled.
            remote_array: Current downstream array value.
            group_ids: Downstream id per group name.  Items whose group has
                no id are skipped and retried on a later pass.
            policy: ``force_all`` rewrites unchanged items in place.
            desired: Current desired items.  Defaults to the active
                positions recorded by ``upsert_observed``.
            backfill: Backfill flag for desired items with no stored row.

        Returns:
            A ``ListPlan`` to write downstream and then ``commit()``.
        """
        policy = policy or SyncPolicy()
        stored = {p.key: p for p in self.positions(identity)}
        if desired is None:
            current = {
                k: _as_item(p) for k, p in stored.items() if p.is_active
            }
        else:
            current = {item.key: item for item in desired if item.is_active}
        tracked = {
            k: p.remote_index
            for k, p in stored.items()
            if p.remote_index is not None
        }

        array = copy.deepcopy([dict(entry) for entry in remote_array])
        next_index = len(array)
        added: dict[str, int] = {}
        removed: list[str] = []
        unchanged: dict[str, int] = {}
        refreshed: list[str] = []
        skipped: list[str] = []
        end_date = self._today()

        for key in sorted(set(tracked) - set(current)):
            index = tracked[key]
            removed.append(key)
            if index < len(array):
                array[index]["is_current"] = False
                array[index]["end_date"] = end_date
            else:
                logger.warning(
                    "%s position %d of %s (%s) is beyond the remote array",
                    self.list_field,
                    index,
                    identity,
                    key,
                )

        for key in sorted(set(current) - set(tracked)):
            item = current[key]
            group_id = group_ids.get(item.group_name)
            if group_id is None:
                logger.warning(
                    "No downstream id for group '%s'; skipping %s for %s",
                    item.group_name,
                    key,
                    identity,
                )
                skipped.append(key)
                continue
            is_backfill = (
                stored[key].is_backfill if key in stored else backfill
            )
            array.append(build_entry(item, group_id, is_backfill))
            added[key] = next_index
            next_index += 1

        for key in sorted(set(current) & set(tracked)):
            index = tracked[key]
            unchanged[key] = index
            if not policy.force_all or index >= len(array):
                continue
            item = current[key]
            group_id = group_ids.get(item.group_name)
            if group_id is None:
                continue
            array[index] = build_entry(
                item, group_id, stored[key].is_backfill
            )
            refreshed.append(key)

        return ListPlan(
            list_field=self.list_field,
            identity=identity,
            array=array,
            added=added,
            removed=removed,
            unchanged=unchanged,
            refreshed=refreshed,
            skipped=skipped,
            desired=list(current.values()),
            backfill=backfill,
        )

    def commit(self, plan: ListPlan) -> None:
        """Persist a plan after its array was written downstream.

        Added keys get their ``remote_index``, removed keys lose their
        tracking row, and unchanged keys are marked synced, all in one
        transaction.
        """
        now = self._clock()
        identity = plan.identity
        desired = {item.key: item for item in plan.desired}

        with transaction(self._con):
            stored = {p.key: p for p in self.positions(identity)}
            for key in plan.removed:
                if key in stored:
                    self._delete(stored[key])

            for key, index in plan.added.items():
                item = desired[key]
                item_fp = position_fingerprint(identity, item)
                self._con.execute(
                    f"""
                    INSERT INTO {self._table} (
                        identity, group_name, role_name, is_active,
                        start_date, end_date, remote_index, fingerprint,
                        last_synced_fingerprint, is_backfill,
                        last_synced_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(identity, group_name, role_name) DO UPDATE SET
                        is_active = excluded.is_active,
                        remote_index = excluded.remote_index,
                        fingerprint = excluded.fingerprint,
                        last_synced_fingerprint =
                            excluded.last_synced_fingerprint,
                        last_synced_at = excluded.last_synced_at
                    """,
                    (
                        identity,
                        item.group_name,
                        item.role_name,
                        int(item.is_active),
                        item.start_date,
                        item.end_date,
                        index,
                        item_fp,
                        item_fp,
                        int(plan.backfill),
                        now,
                        now,
                    ),
                )

            for key in plan.unchanged:
                if key not in stored:
                    continue
                self._con.execute(
                    f"UPDATE {self._table} SET "
                    "last_synced_fingerprint = fingerprint, "
                    "last_synced_at = ? "
                    "WHERE identity = ? AND group_name = ? AND role_name = ?",
                    (
                        now,
                        identity,
                        stored[key].group_name,
                        stored[key].role_name,
                    ),
                )

        logger.info(
            "%s for %s: %d added, %d closed, %d unchanged",
            self.list_field,
            identity,
            len(plan.added),
            len(plan.removed),
            len(plan.unchanged),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _deactivate(self, position: ListPosition) -> None:
        closed = position.model_copy(update={"is_active": False})
        self._con.execute(
            f"UPDATE {self._table} SET is_active = 0, fingerprint = ? "
            "WHERE identity = ? AND group_name = ? AND role_name = ?",
            (
                position_fingerprint(position.identity, closed),
                position.identity,
                position.group_name,
                position.role_name,
            ),
        )

    def _delete(self, position: ListPosition) -> None:
        self._con.execute(
            f"DELETE FROM {self._table} "
            "WHERE identity = ? AND group_name = ? AND role_name = ?",
            (position.identity, position.group_name, position.role_name),
        )

    def _to_position(self, row: sqlite3.Row) -> ListPosition:
        return ListPosition(
            list_field=self.list_field,
            identity=row["identity"],
            group_name=row["group_name"],
            role_name=row["role_name"],
            is_active=bool(row["is_active"]),
            start_date=row["start_date"],
            end_date=row["end_date"],
            remote_index=row["remote_index"],
            fingerprint=row["fingerprint"],
            last_synced_fingerprint=row["last_synced_fingerprint"],
            is_backfill=bool(row["is_backfill"]),
            last_synced_at=row["last_synced_at"],
        )
