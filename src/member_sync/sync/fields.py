"""Tracked field set and downstream field access.

``TRACKED_FIELDS`` is the explicit, versioned list of fields that take part
in conflict resolution and reverse change detection.  Changing the list
means bumping ``TRACKED_FIELDS_VERSION``.

Contact fields live in the ordered ``contact_info`` list of a profile
(``{"contact_type": ..., "contact_value": ...}`` entries); the others are
plain keys.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from typing import Any


TRACKED_FIELDS_VERSION = 1

TRACKED_FIELDS: tuple[str, ...] = (
    "email",
    "email2",
    "mobile",
    "phone",
    "screening_date",
    "helpdesk_id",
    "financial_block",
)

CONTACT_FIELDS = frozenset({"email", "email2", "mobile", "phone"})


def normalize_value(value: Any) -> str | None:
    """Reduce a field value to its comparable text form.

    ``None`` stays ``None``; booleans become ``"1"``/``"0"``; anything else
    goes through ``str()``.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _contact_entries(fields: Mapping[str, Any]) -> list[dict[str, Any]]:
    return list(fields.get("contact_info") or [])


def _contact_entry(
    entries: list[dict[str, Any]], field: str
) -> dict[str, Any] | None:
    """Return the contact entry holding *field*, or ``None``.

    ``email2`` prefers an explicit ``email2`` contact and falls back to the
    second ``email`` contact.
    """
    for entry in entries:
        if entry.get("contact_type") == field:
            return entry
    if field == "email2":
        emails = [e for e in entries if e.get("contact_type") == "email"]
        if len(emails) > 1:
            return emails[1]
    return None


def extract_field_value(fields: Mapping[str, Any], field: str) -> Any:
    """Return the raw value of *field* from a profile field mapping.

    Missing values are ``None``.
    """
    if field not in CONTACT_FIELDS:
        return fields.get(field)

    entry = _contact_entry(_contact_entries(fields), field)
    return entry.get("contact_value") if entry is not None else None


def extract_tracked_values(
    fields: Mapping[str, Any],
    tracked: Iterable[str] = TRACKED_FIELDS,
) -> dict[str, str | None]:
    """Return the normalized value of every tracked field."""
    return {
        name: normalize_value(extract_field_value(fields, name))
        for name in tracked
    }


def apply_resolutions(
    fields: Mapping[str, Any], values: Mapping[str, Any]
) -> dict[str, Any]:
    """Return a copy of *fields* with every winning value written in.

    Contact values update the entry ``extract_field_value`` reads them from,
    so the contact list keeps its order and length; a missing entry is
    appended unless the value is ``None``.
    """
    result = copy.deepcopy(dict(fields))

    for name, value in values.items():
        if name not in CONTACT_FIELDS:
            result[name] = value
            continue

        entries = result.get("contact_info") or []
        result["contact_info"] = entries
        entry = _contact_entry(entries, name)
        if entry is not None:
            entry["contact_value"] = value
        elif value is not None:
            entries.append({"contact_type": name, "contact_value": value})

    return result
