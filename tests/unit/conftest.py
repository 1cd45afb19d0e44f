"""Unit-specific fixtures (in-memory SQLite and fakeredis, no network)."""

from __future__ import annotations

import aiosqlite
import fakeredis
import pytest

from csvpager.cache import RedisCache, SqliteCache


@pytest.fixture()
async def sqlite_cache():
    """In-memory SQLite cache for unit tests."""
    async with aiosqlite.connect(":memory:") as db:
        c = SqliteCache(db)
        await c.init_db()
        yield c


@pytest.fixture()
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture()
async def redis_client(redis_server: fakeredis.FakeServer):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture()
def redis_cache(redis_client) -> RedisCache:
    return RedisCache(redis_client)
