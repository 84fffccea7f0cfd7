"""
tests/conftest.py -- Shared test fixtures for terminalpub.

This module provides:
  - store / cache / runner / clock: the building blocks unit tests wire
    services from, all in memory
  - provider / transport: a fake Mastodon instance behind httpx.MockTransport
  - _patch_lifespan(): wires test components into app.state, bypassing the
    real startup (no Redis server, no network)
  - web_client: TestClient with follow_redirects=False for device-login pages

Design: the store uses the plain "sqlite://" URL, which AuthStore pairs with
a StaticPool so every connection (including those from TestClient's worker
threads) sees the same in-memory database.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Generator
from contextlib import asynccontextmanager
from pathlib import Path

# Project root must be importable before any application import.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# A generous default; the one rate-limit test lowers it explicitly.
os.environ.setdefault("DEVICE_RATE_LIMIT", "1000/minute")

import httpx
import pytest
from fastapi.testclient import TestClient

from asgi import app
from api.main import attach_services
from auth.store import AuthStore
from cache.store import SessionCache
from core.background import DetachedRunner
from core.fetcher import new_client
from core.limiter import limiter
from tests.utils import FakeClock, InMemoryRedis, MastodonProvider, make_settings

# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite://")
    yield s
    s.close()


@pytest.fixture()
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture()
def cache(fake_redis: InMemoryRedis) -> SessionCache:
    return SessionCache(fake_redis)  # type: ignore[arg-type]


@pytest.fixture()
def runner() -> DetachedRunner:
    return DetachedRunner(timeout=1.0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def provider() -> MastodonProvider:
    return MastodonProvider()


@pytest.fixture()
def transport(provider: MastodonProvider) -> httpx.MockTransport:
    return httpx.MockTransport(provider)


# ---------------------------------------------------------------------------
# App-level fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, cache: SessionCache, transport: httpx.MockTransport):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine that stands in for the real
    sweep loop (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = make_settings()
        client = new_client(5.0, "terminalpub-tests", transport=transport)
        attach_services(app, settings, store, cache, client, transport=transport)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()
        await app.state.runner.drain()
        await client.aclose()

    return test_lifespan


@pytest.fixture()
def web_client(store, cache, transport) -> Generator[TestClient, None, None]:
    """Yield a TestClient for the device-login pages.

    follow_redirects=False is essential: the tests assert on the redirect
    to the provider's consent page, which would otherwise be followed.
    """
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(store, cache, transport)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture()
def api_client(store, cache, transport) -> Generator[TestClient, None, None]:
    app.router.lifespan_context = _patch_lifespan(store, cache, transport)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
