"""Error taxonomy for the sync engine.

Every failure raised while processing one entity is one of these classes.
Callers catch them per entity, record ``(identity, message)`` on the run
report, and move on to the next entity:

- ``ValidationError``: record is missing its identity or a required field.
  Skipped and counted, never fatal.
- ``ConflictResolutionFailure``: the resolver was handed a malformed
  timestamp or field value.  The entity is skipped with full context logged.
- ``RemoteNotFound``: downstream reports that a tracked remote id no longer
  exists.  Triggers ``mark_remote_missing`` and the create path.
- ``RemoteServerError``: 5xx.  Retried by ``call_with_retry`` and surfaced
  only once retries are exhausted.
- ``RemoteClientError``: any other 4xx.  Not retried.
"""

from __future__ import annotations


class MemberSyncError(Exception):
    """Base class for all errors raised by member_sync."""


class ValidationError(MemberSyncError):
    """An upstream record cannot be tracked as given."""

    def __init__(self, message: str, identity: str | None = None) -> None:
        super().__init__(message)
        self.identity = identity


class ConflictResolutionFailure(MemberSyncError):
    """The resolver could not interpret a timestamp or field value."""

    def __init__(
        self,
        message: str,
        entity_id: str | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.field = field


# ---------------------------------------------------------------------------
# Remote errors
# ---------------------------------------------------------------------------


class RemoteError(MemberSyncError):
    """Non-success response from the downstream profile store.

    Attributes:
        status: HTTP status code (``0`` when no response was received).
        message: Response body or reason text.
    """

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


class RemoteNotFound(RemoteError):
    """Downstream record does not exist (404/410)."""


class RemoteClientError(RemoteError):
    """Request rejected by downstream (4xx other than not-found)."""


class RemoteServerError(RemoteError):
    """Downstream failed to handle the request (5xx or no response)."""


def error_from_status(status: int, message: str) -> RemoteError:
    """Map an HTTP status code onto the matching ``RemoteError`` subclass.

    Args:
        status: HTTP status code of the failed response.
        message: Body or reason text to carry on the error.

    Returns:
        An instance of ``RemoteNotFound``, ``RemoteClientError`` or
        ``RemoteServerError``.
    """
    match status:
        case 404 | 410:
            return RemoteNotFound(status, message)
        case s if 400 <= s < 500:
            return RemoteClientError(status, message)
        case _:
            return RemoteServerError(status, message)
