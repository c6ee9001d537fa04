"""Shared test fixtures for the notification test suite."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import UTC, datetime, timedelta

from notifications.bus import EventBus
from notifications.preferences import NotificationPreference


# ── Database Pool Mock ──


class FakeRecord(dict):
    """Mimics asyncpg.Record: supports both dict-style and attribute access."""
    def __getattr__(self, key):
        try:
            return self[key]
        except KeyError:
            raise AttributeError(key)


class FakeConnection:
    """Mock asyncpg connection with configurable return values.

    ``fetchrow_results`` is consumed first when set; otherwise every fetchrow
    returns ``fetchrow_result``.
    """

    def __init__(self):
        self.execute_results: list[str] = ["UPDATE 1"]
        self.fetch_results: list[list[dict]] = [[]]
        self.fetchrow_result: dict | None = None
        self.fetchrow_results: list[dict | None] = []
        self.fetchval_result = 1
        self._execute_calls: list[tuple] = []
        self._fetch_calls: list[tuple] = []
        self._fetchrow_calls: list[tuple] = []
        self._fetchval_calls: list[tuple] = []

    async def execute(self, query, *args):
        self._execute_calls.append((query, args))
        if len(self.execute_results) > 1:
            return self.execute_results.pop(0)
        return self.execute_results[0] if self.execute_results else "UPDATE 0"

    async def fetch(self, query, *args):
        self._fetch_calls.append((query, args))
        result = self.fetch_results.pop(0) if self.fetch_results else []
        return [FakeRecord(r) for r in result]

    async def fetchrow(self, query, *args):
        self._fetchrow_calls.append((query, args))
        if self.fetchrow_results:
            row = self.fetchrow_results.pop(0)
            return FakeRecord(row) if row else None
        return FakeRecord(self.fetchrow_result) if self.fetchrow_result else None

    async def fetchval(self, query, *args):
        self._fetchval_calls.append((query, args))
        return self.fetchval_result

    def transaction(self):
        return FakeTransaction()


class FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        pass


class FakePool:
    """Mock asyncpg.Pool that yields a FakeConnection."""

    def __init__(self):
        self.conn = FakeConnection()

    def acquire(self):
        return FakePoolContext(self.conn)


class FakePoolContext:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *args):
        pass


@pytest.fixture
def fake_pool():
    """Provide a mock database pool."""
    return FakePool()


@pytest.fixture
def fake_conn(fake_pool):
    """Direct access to the underlying FakeConnection."""
    return fake_pool.conn


# ── Event bus ──


@pytest.fixture
def bus():
    """A fresh bus per test, so listeners never leak between tests."""
    return EventBus()


@pytest.fixture
def recording_bus(bus):
    """Bus with a catch-all listener recording every event."""
    bus.events = []
    bus.subscribe("notification", bus.events.append)
    return bus


# ── Users and preferences ──


@pytest.fixture
def user():
    return {
        "id": "u1",
        "email": "ada@example.com",
        "name": "Ada",
        "phone": None,
        "role": "user",
        "is_active": True,
    }


@pytest.fixture
def prefs():
    """Default preference document for u1."""
    return NotificationPreference(user_id="u1")


# ── Repository mocks ──


@pytest.fixture
def mock_preference_repo(prefs):
    repo = MagicMock()
    repo.get_or_create_for_user = AsyncMock(return_value=prefs)
    repo.reserve_daily_slot = AsyncMock(return_value=True)
    repo.release_daily_slot = AsyncMock(return_value=True)
    repo.find_users_opted_into = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def mock_notification_repo():
    repo = MagicMock()

    async def create(record):
        record.id = 101
        record.created_at = datetime.now(UTC)
        return record

    repo.create = AsyncMock(side_effect=create)
    repo.transition_channel = AsyncMock(return_value=True)
    repo.refresh_overall_status = AsyncMock(return_value=None)
    repo.exists_with_idempotency_key = AsyncMock(return_value=False)
    return repo


@pytest.fixture
def mock_job_repo():
    repo = MagicMock()
    repo.create_bulk_jobs = AsyncMock(side_effect=lambda specs, now: [s.job_id for s in specs])
    return repo


# ── Timestamp helpers ──


@pytest.fixture
def now():
    """A fixed UTC instant: Wednesday 2025-06-11 12:00."""
    return datetime(2025, 6, 11, 12, 0, tzinfo=UTC)


@pytest.fixture
def old_datetime(now):
    """Datetime 5 days before ``now``."""
    return now - timedelta(days=5)
