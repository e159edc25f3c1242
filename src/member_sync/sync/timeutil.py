"""UTC timestamp helpers shared by the sync modules."""

from __future__ import annotations

from datetime import date, datetime, timezone


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def today() -> str:
    """Current UTC date as ``YYYY-MM-DD``."""
    return datetime.now(timezone.utc).date().isoformat()


def parse_timestamp(value: str | datetime | date | None) -> datetime | None:
    """Parse an ISO 8601 timestamp into an aware UTC ``datetime``.

    Accepts a trailing ``Z``.  Naive values are taken to be UTC.  ``None``
    and ``""`` return ``None``.

    Raises:
        ValueError: If *value* is not a valid ISO 8601 timestamp.
        TypeError: If *value* is of an unsupported type.
    """
    if value is None or value == "":
        return None

    match value:
        case datetime():
            parsed = value
        case date():
            parsed = datetime(value.year, value.month, value.day)
        case str():
            text = value.strip()
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
        case _:
            raise TypeError(
                f"Unsupported timestamp type: {type(value).__name__}"
            )

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_after(candidate: str | None, reference: str | None) -> bool:
    """``True`` when *candidate* is strictly later than *reference*.

    A missing *reference* is infinitely old.
    """
    new = parse_timestamp(candidate)
    if new is None:
        return False
    old = parse_timestamp(reference)
    return old is None or new > old
