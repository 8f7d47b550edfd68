"""Integration test fixtures.

Runs the PostgreSQL engine against an ephemeral server provided by
pytest-postgresql. The module is skipped when no PostgreSQL binaries are
installed locally.
"""

from __future__ import annotations

import shutil

import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Skip when the server binaries are unavailable
# ---------------------------------------------------------------------------

if not (shutil.which("pg_ctl") or shutil.which("pg_config")):
    collect_ignore_glob = ["test_*.py"]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# 2024-07-04T12:00:00Z
BASE_MS = 1720094400000


class StepClock:
    def __init__(self, now: int = BASE_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return StepClock()


# ---------------------------------------------------------------------------
# Connection settings fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def pg_config(postgresql):
    """Return provider options pointing at the per-test database.

    pytest-postgresql drops and recreates the database for each test, so
    tests are isolated.
    """
    info = postgresql.info
    return {
        "host": info.host,
        "port": info.port,
        "database": info.dbname,
        "user": info.user,
        "password": info.password or "",
        "connectionTimeoutMillis": 5000,
        "max": 4,
    }
