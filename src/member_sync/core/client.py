import logging
import threading
from collections.abc import Iterator, Mapping
from typing import Any

import requests

from ..config import Config
from ..errors import RemoteServerError, error_from_status
from .retry import call_with_retry

logger = logging.getLogger(__name__)


class ProfileStoreClient:
    """REST client for the downstream profile store.

    Person records are returned as ``{"id", "modified", "fields"}``
    mappings.  Non-2xx responses raise the ``RemoteError`` subclass matching
    the status; server errors are retried.
    """

    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = config.profile_store_url.rstrip("/")

    @property
    def session(self) -> requests.Session:
        """Current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.auth = (self.config.username, self.config.password)
        session.headers["Accept"] = "application/json"
        return session

    def _request(
        self,
        method: str,
        path: str,
        params: Mapping[str, Any] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:
        """Make one JSON request with retries on server errors."""
        url = f"{self.base_url}/{path.lstrip('/')}"

        def attempt() -> Any:
            try:
                response = self._get_session().request(
                    method,
                    url,
                    params=params,
                    json=payload,
                    timeout=(10, self.config.timeout),
                )
            except requests.RequestException as exc:
                raise RemoteServerError(0, str(exc)) from exc

            if not response.ok:
                raise error_from_status(
                    response.status_code, _error_message(response)
                )
            if not response.content:
                return None
            return response.json()

        logger.debug("%s %s", method, url)
        return call_with_retry(attempt, max_retries=self.config.max_retries)

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    def get_person(self, remote_id: int) -> dict[str, Any]:
        return _to_record(self._request("GET", f"people/{remote_id}"))

    def create_person(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        data = self._request("POST", "people", payload={"fields": fields})
        record = _to_record(data)
        if record["id"] is None:
            raise ValueError("Profile store returned no id for new person")
        return record

    def update_person(
        self, remote_id: int, fields: Mapping[str, Any]
    ) -> dict[str, Any]:
        data = self._request(
            "PUT", f"people/{remote_id}", payload={"fields": fields}
        )
        return _to_record(data)

    def list_modified_people(
        self, since: str, per_page: int | None = None
    ) -> Iterator[dict[str, Any]]:
        """Yield every person modified after *since*, page by page.

        Paging stops at the first page shorter than *per_page*.
        """
        per_page = per_page or self.config.per_page
        page = 1
        while True:
            batch = self._request(
                "GET",
                "people",
                params={
                    "modified_after": since,
                    "page": page,
                    "per_page": per_page,
                },
            ) or []
            logger.debug("Page %d: %d record(s)", page, len(batch))
            for item in batch:
                yield _to_record(item)
            if len(batch) < per_page:
                return
            page += 1


def _to_record(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError("Invalid person data format from server")
    remote_id = data.get("id")
    return {
        "id": int(remote_id) if remote_id is not None else None,
        "modified": data.get("modified"),
        "fields": data.get("fields") or {},
    }


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason or "request failed"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason or "request failed"
