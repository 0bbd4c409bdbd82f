"""
Pytest configuration and shared fixtures.

Storage-backed fixtures use a fresh in-memory SQLite database per test so the
real SQLAlchemy code paths run without external services.
"""

import pytest
import structlog

from profilesync.storage.target_store import SqlTargetStore
from profilesync.sync.run_ledger import InMemoryRunLedger, SqlRunLedger
from tests.fakes import FakeClock, FakeMonotonic, make_config, make_database, utc


@pytest.fixture(autouse=True, scope="session")
def plain_structlog():
    """Start from structlog defaults so capture_logs sees every logger."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def database(config):
    db = make_database(config)
    yield db
    db.dispose()


@pytest.fixture
def store(database):
    return SqlTargetStore(database)


@pytest.fixture(params=["memory", "sql"])
def ledger(request, database):
    """Each ledger test runs against both implementations."""
    if request.param == "memory":
        return InMemoryRunLedger()
    return SqlRunLedger(database)


@pytest.fixture
def clock():
    return FakeClock(utc(2024, 3, 1, 12, 0, 0))


@pytest.fixture
def monotonic():
    return FakeMonotonic()
