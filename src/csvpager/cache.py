"""Expiring key-value cache for page results and total line counts.

Two backends implement ``CacheProtocol``: Redis (the deployment default) and a
single-file SQLite store for running without a Redis server. Store failures
are raised as ``CsvPagerError(CACHE_ERROR)`` rather than degraded into misses;
the request handler turns them into a 500.

Handles are request-scoped: ``open_cache()`` opens one connection per request
and closes it on every exit path. Entries expire passively and are never
deleted by this module.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import aiosqlite
import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from csvpager.errors import CsvPagerError, ErrorCode

if TYPE_CHECKING:
    from csvpager.config import Settings
    from csvpager.models.page import PageRequest

log = structlog.get_logger()

_CREATE_KV_TABLE = """
CREATE TABLE IF NOT EXISTS kv_cache (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  TEXT NOT NULL
)
"""


class CacheProtocol(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...


def _digest(*parts: object) -> str:
    return hashlib.sha256(json.dumps(parts).encode()).hexdigest()


def page_cache_key(prefix: str, request: PageRequest) -> str:
    """Key for one page result; fully determined by url, page, limit and filter."""
    digest = _digest(request.url, request.page, request.limit, request.filter or "")
    return f"{prefix}page:{digest}"


def total_cache_key(prefix: str, url: str) -> str:
    """Key for the total line count; shared by every pagination of ``url``."""
    return f"{prefix}total:{_digest(url)}"


class RedisCache:
    """Redis-backed cache implementing CacheProtocol."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(key)
        except (RedisError, OSError) as exc:
            log.warning("cache_read_error", key=key, exc_info=True)
            raise CsvPagerError(ErrorCode.CACHE_ERROR, f"Cache read failed: {exc}") from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            log.warning("cache_write_error", key=key, exc_info=True)
            raise CsvPagerError(ErrorCode.CACHE_ERROR, f"Cache write failed: {exc}") from exc


class SqliteCache:
    """SQLite-backed cache implementing CacheProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create the table if needed. Safe to call on every connection."""
        try:
            await self._db.execute(_CREATE_KV_TABLE)
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise CsvPagerError(
                ErrorCode.CACHE_ERROR, f"Cache initialisation failed: {exc}"
            ) from exc

    async def get(self, key: str) -> str | None:
        """Return the value, or ``None`` when absent or past its expiry."""
        try:
            cursor = await self._db.execute(
                "SELECT value, expires_at FROM kv_cache WHERE key = ?",
                (key,),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            log.warning("cache_read_error", key=key, exc_info=True)
            raise CsvPagerError(ErrorCode.CACHE_ERROR, f"Cache read failed: {exc}") from exc
        if row is None:
            return None
        if datetime.now(UTC) >= datetime.fromisoformat(row[1]):
            return None
        return row[0]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            expires_at = datetime.now(UTC) + timedelta(seconds=ttl_seconds)
            await self._db.execute(
                "INSERT OR REPLACE INTO kv_cache (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, expires_at.isoformat()),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            log.warning("cache_write_error", key=key, exc_info=True)
            raise CsvPagerError(ErrorCode.CACHE_ERROR, f"Cache write failed: {exc}") from exc


@asynccontextmanager
async def open_cache(settings: Settings) -> AsyncIterator[CacheProtocol]:
    """Open a request-scoped cache handle; the connection is always released."""
    if settings.cache.backend == "sqlite":
        db_path = Path(settings.cache.db_path).expanduser()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(db_path)
        except (OSError, aiosqlite.Error) as exc:
            raise CsvPagerError(ErrorCode.CACHE_ERROR, f"Cache connection failed: {exc}") from exc
        try:
            cache = SqliteCache(db)
            await cache.init_db()
            yield cache
        finally:
            await db.close()
        return

    client = redis.Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        username=settings.redis.username or None,
        password=settings.redis.password or None,
        db=settings.redis.db,
        decode_responses=True,
    )
    try:
        yield RedisCache(client)
    finally:
        await client.aclose()
