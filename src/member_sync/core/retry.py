"""Retry helper for transient profile store failures."""

import logging
import time
from typing import Callable, TypeVar

from ..errors import RemoteServerError

T = TypeVar("T")
logger = logging.getLogger(__name__)


def call_with_retry(
    fn: Callable[[], T],
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Call *fn*, retrying server errors with exponential backoff.

    Only ``RemoteServerError`` (5xx and connection failures) is retried;
    client errors propagate immediately.  Delays double from *base_delay*
    (1s, 2s, 4s with the defaults).  After the last attempt the final error
    is re-raised.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except RemoteServerError as exc:
            if attempt >= max_retries:
                raise
            delay = base_delay * (2**attempt)
            attempt += 1
            logger.warning(
                "%s, retrying in %.0fs (attempt %d/%d)",
                exc,
                delay,
                attempt,
                max_retries,
            )
            (sleep or time.sleep)(delay)
