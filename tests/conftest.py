"""
tests/conftest.py -- Shared test fixtures for VulnTrack tests.

This module provides:
  - fixed_clock / FakeClock: deterministic time source for the lifecycle core
  - store: a fresh in-memory CMDBStore per test
  - api_client: TestClient over the real app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from cmdb.store import CMDBStore

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that returns a settable time and can be advanced."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[CMDBStore, None, None]:
    """Fresh in-memory store. Single-threaded use only."""
    s = CMDBStore("sqlite:///:memory:")
    yield s
    s.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(cmdb: CMDBStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so TestClient routes see
    an isolated test DB rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.cmdb = cmdb
        yield

    return test_lifespan


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Clear slowapi counters so tests never trip each other's limits."""
    limiter.reset()


@pytest.fixture(scope="module")
def api_client(request: pytest.FixtureRequest) -> Generator[TestClient, None, None]:
    """Yield a TestClient bound to the real app and an isolated shared-memory store.

    Module-scoped: one database per test module, so tests inside a module
    create their own entities rather than relying on an empty DB.
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    cmdb = CMDBStore(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")
    app.router.lifespan_context = _patch_lifespan(cmdb)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    cmdb.close()
