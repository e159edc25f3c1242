"""Deterministic content fingerprints.

A fingerprint is the SHA-256 hex digest of the canonical JSON form of
``{"identity": ..., "payload": ...}``.  Canonical JSON means:

* object keys sorted at every nesting level,
* arrays kept in their given order (contact entries are ordered),
* compact separators and raw UTF-8 text,
* ``NaN`` and ``Infinity`` rejected.

``None`` and ``""`` serialize differently and an absent key is simply not
written, so nothing is normalized behind the caller's back.

Values that are not plain JSON types must implement ``to_canonical()``
(see ``Canonicalizable``); anything else raises ``TypeError``.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Canonicalizable(Protocol):
    """Object that knows how to reduce itself to plain JSON types."""

    def to_canonical(self) -> Any:
        ...  # pragma: no cover


def _default(obj: Any) -> Any:
    if isinstance(obj, Canonicalizable):
        return obj.to_canonical()
    raise TypeError(
        f"Object of type {type(obj).__name__} cannot be canonicalized"
    )


def canonicalize(value: Any) -> str:
    """Serialize *value* to canonical JSON text.

    Raises:
        TypeError: If *value* contains an object that is neither a JSON
            type nor ``Canonicalizable``.
        ValueError: If *value* contains ``NaN`` or an infinite float.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        default=_default,
    )


def fingerprint(identity: str, payload: Any) -> str:
    """Return the 64-char SHA-256 hex digest of *identity* plus *payload*."""
    text = canonicalize({"identity": identity, "payload": payload})
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
