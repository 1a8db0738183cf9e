"""Shared test fixtures for stui."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from stui.config import Settings
from stui.database import create_engine, ensure_tables
from stui.services.cache_service import SyncCache

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

TEST_API_KEY = "test-api-key"
TEST_BASE_URL = "http://syncthing.test"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary cache database."""
    db_path = tmp_path / "test.db"
    return Settings(
        base_url=TEST_BASE_URL,
        api_key=TEST_API_KEY,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        drain_interval=0.001,
        event_retry_delay=0.0,
        debug=False,
    )


@pytest.fixture
async def db_engine(
    test_settings: Settings,
) -> AsyncGenerator[tuple[AsyncEngine, async_sessionmaker[AsyncSession]]]:
    """Create a test database engine with all cache tables."""
    engine, session_factory = create_engine(test_settings)
    await ensure_tables(engine)
    yield engine, session_factory
    await engine.dispose()


@pytest.fixture
def cache(db_engine: tuple[AsyncEngine, async_sessionmaker[AsyncSession]]) -> SyncCache:
    """A cache backed by the temporary database."""
    _, session_factory = db_engine
    return SyncCache(session_factory)


class FakeDaemon:
    """Minimal in-memory stand-in for the daemon REST API.

    Routes map ``(method, path)`` to a JSON payload, an ``httpx.Response`` or a
    callable taking the request. Every request is recorded in ``requests``.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, result: Any) -> None:
        self.routes[(method, path)] = result

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            route = route(request)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, content=json.dumps(route).encode())

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture
def fake_daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    """Build a raw daemon event payload."""

    def _make(event_id: int, event_type: str, **data: Any) -> dict[str, Any]:
        return {
            "id": event_id,
            "globalID": event_id,
            "time": "2025-01-01T12:00:00.123456789+01:00",
            "type": event_type,
            "data": data,
        }

    return _make
