"""Shared pytest fixtures for member-sync tests."""

import copy
import itertools
from datetime import datetime, timedelta, timezone

import pytest
from dotenv import load_dotenv

from member_sync.config import Config
from member_sync.errors import RemoteNotFound
from member_sync.sync.schema import open_db

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live profile store",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live profile store"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic clock returning ISO 8601 strings.

    Every call returns the current time; ``advance()`` moves it forward.
    """

    def __init__(self, start: str = "2026-03-01T12:00:00+00:00") -> None:
        self.now = datetime.fromisoformat(start)

    def __call__(self) -> str:
        return self.now.isoformat()

    def advance(self, **kwargs) -> str:
        self.now += timedelta(**kwargs)
        return self.now.isoformat()


class FakeProfileStore:
    """In-memory profile store standing in for ``ProfileStoreClient``.

    People are kept as ``{"id", "modified", "fields"}`` records.  Writes
    stamp ``modified`` from *clock*.
    """

    def __init__(self, clock=None) -> None:
        self.people: dict[int, dict] = {}
        self.clock = clock or (
            lambda: datetime.now(timezone.utc).isoformat()
        )
        self._ids = itertools.count(1001)
        self.calls: list[tuple] = []
        self.fail_update: dict[int, Exception] = {}

    def get_person(self, remote_id: int) -> dict:
        self.calls.append(("get", remote_id))
        if remote_id not in self.people:
            raise RemoteNotFound(404, f"person {remote_id} not found")
        return copy.deepcopy(self.people[remote_id])

    def create_person(self, fields) -> dict:
        self.calls.append(("create", fields.get("identity")))
        remote_id = next(self._ids)
        self.people[remote_id] = {
            "id": remote_id,
            "modified": self.clock(),
            "fields": copy.deepcopy(dict(fields)),
        }
        return copy.deepcopy(self.people[remote_id])

    def update_person(self, remote_id: int, fields) -> dict:
        self.calls.append(("update", remote_id))
        if remote_id in self.fail_update:
            raise self.fail_update[remote_id]
        if remote_id not in self.people:
            raise RemoteNotFound(404, f"person {remote_id} not found")
        person = self.people[remote_id]
        person["fields"].update(copy.deepcopy(dict(fields)))
        person["modified"] = self.clock()
        return copy.deepcopy(person)

    def human_edit(self, remote_id: int, modified: str, **changes) -> None:
        """Simulate a person editing a profile directly."""
        person = self.people[remote_id]
        fields = person["fields"]
        for name, value in changes.items():
            if name in ("email", "mobile", "phone", "email2"):
                for entry in fields.setdefault("contact_info", []):
                    if entry["contact_type"] == name:
                        entry["contact_value"] = value
                        break
                else:
                    fields["contact_info"].append(
                        {"contact_type": name, "contact_value": value}
                    )
            else:
                fields[name] = value
        person["modified"] = modified

    def list_modified_people(self, since: str):
        since_dt = datetime.fromisoformat(since.replace("Z", "+00:00"))
        for person in sorted(self.people.values(), key=lambda p: p["id"]):
            modified = datetime.fromisoformat(person["modified"])
            if modified > since_dt:
                yield copy.deepcopy(person)

    def writes(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("create", "update")]


def member(identity: str = "M001", **overrides) -> dict:
    """Build an upstream member record mapping."""
    record = {
        "identity": identity,
        "first_name": "Anna",
        "last_name": "de Vries",
        "city": "Utrecht",
        "contacts": [
            {"contact_type": "email", "value": f"{identity.lower()}@ex.org"},
            {"contact_type": "mobile", "value": "0612345678"},
        ],
        "screening_date": None,
        "financial_block": False,
    }
    record.update(overrides)
    return record


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    """Migrated SQLite state database in a temp directory."""
    con = open_db(tmp_path / "sync.db")
    yield con
    con.close()


@pytest.fixture
def store(clock):
    return FakeProfileStore(clock=clock)


@pytest.fixture
def mock_config():
    """Create a Config instance for testing."""
    return Config(
        profile_store_url="https://profiles.example.org/api",
        username="sync-bot",
        password="testpass",
        max_retries=2,
    )
