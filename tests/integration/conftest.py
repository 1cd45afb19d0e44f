"""Integration test fixtures.

Provides the ASGI app wired to a respx router standing in for upstream CSV
hosts and a fakeredis server standing in for Redis. Requests go through
``httpx.ASGITransport``, so the full handler, error mapping and response
headers are exercised without opening sockets.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import fakeredis
import httpx
import pytest
import respx

from csvpager.cache import CacheProtocol, RedisCache
from csvpager.config import Settings
from csvpager.fetcher import Fetcher, build_http_client
from csvpager.server import create_app
from csvpager.state import AppState


@pytest.fixture()
def subprocess_env(tmp_path) -> dict[str, str]:
    """Environment for server subprocesses, isolated from the developer's config."""
    env = os.environ.copy()
    env["CSVPAGER__CACHE__BACKEND"] = "sqlite"
    env["CSVPAGER__CACHE__DB_PATH"] = str(tmp_path / "cache.db")
    return env


@pytest.fixture()
def upstream() -> respx.Router:
    return respx.Router(assert_all_called=False)


@pytest.fixture()
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture()
def settings() -> Settings:
    return Settings(pagination={"mandatory_headers": ["id", "name"]})


@pytest.fixture()
async def app_state(
    settings: Settings, upstream: respx.Router, redis_server: fakeredis.FakeServer
) -> AsyncIterator[AppState]:
    @asynccontextmanager
    async def cache_factory() -> AsyncIterator[CacheProtocol]:
        client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
        try:
            yield RedisCache(client)
        finally:
            await client.aclose()

    transport = httpx.MockTransport(upstream.handler)
    async with build_http_client(settings.fetcher, transport=transport) as http_client:
        yield AppState(
            settings=settings,
            fetcher=Fetcher(http_client, settings.fetcher),
            cache_factory=cache_factory,
        )


@pytest.fixture()
async def client(app_state: AppState) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(state=app_state)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
