"""Page request orchestration.

One request runs linearly:

    validate -> page cache lookup (hit: return) -> resolve total line count
    -> compute window -> streamed fetch + parse -> assemble -> cache -> return

The cached page value is the exact JSON text sent to the client, so repeated
requests inside the TTL receive byte-identical bodies without touching the
upstream server.

Concurrent misses for the same key are not de-duplicated: each one fetches
and parses on its own and the last write wins. The computation is idempotent,
so this only costs redundant upstream traffic.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from csvpager.cache import page_cache_key, total_cache_key
from csvpager.errors import CsvPagerError, ErrorCode
from csvpager.models.page import PageRequest, PageResult, Record, first_error_message
from csvpager.parser import ParseOptions, contains_text, parse_records

if TYPE_CHECKING:
    from csvpager.cache import CacheProtocol
    from csvpager.config import Settings
    from csvpager.fetcher import Fetcher

log = structlog.get_logger()


def parse_page_request(body: Any, max_page_size: int) -> PageRequest:
    """Validate a decoded JSON body, reporting only the first failing rule."""
    if not isinstance(body, dict):
        raise CsvPagerError(ErrorCode.INVALID_INPUT, "request body must be a JSON object")
    try:
        return PageRequest.model_validate(body, context={"max_page_size": max_page_size})
    except ValidationError as exc:
        raise CsvPagerError(ErrorCode.INVALID_INPUT, first_error_message(exc.errors())) from exc


def compute_window(page: int, limit: int) -> tuple[int, int]:
    """Return the 0-based ``[start, end)`` data-row range for ``page``."""
    start = (page - 1) * limit
    return start, start + limit


def count_total_lines(body: str) -> int:
    """Approximate data-row count: newline-separated lines minus the header.

    Quoted fields containing newlines make this overcount; the figure only
    feeds ``pageCount`` and is kept as-is for compatibility.
    """
    return body.count("\n")


def page_count(total_lines: int, limit: int) -> int:
    return max(1, -(-total_lines // limit))


class PageService:
    """Serves pages for one request using a request-scoped cache handle."""

    def __init__(self, settings: Settings, cache: CacheProtocol, fetcher: Fetcher) -> None:
        self._settings = settings
        self._cache = cache
        self._fetcher = fetcher

    async def get_page(self, body: Any) -> str:
        """Return the JSON text of the requested page."""
        pagination = self._settings.pagination
        request = parse_page_request(body, pagination.max_page_size)

        prefix = self._settings.cache.key_prefix
        page_key = page_cache_key(prefix, request)
        cached = await self._cache.get(page_key)
        if cached is not None:
            log.info("page_cache_hit", url=request.url, page=request.page, limit=request.limit)
            return cached
        log.info("page_cache_miss", url=request.url, page=request.page, limit=request.limit)

        total_lines = await self._resolve_total_lines(request.url)

        start, end = compute_window(request.page, request.limit)
        records = await self._read_window(request, start, end)

        if not records:
            raise CsvPagerError(ErrorCode.NO_RECORDS_FOUND, "No records found")

        missing = [h for h in pagination.mandatory_headers if h not in records[0]]
        if missing:
            log.info("mandatory_headers_missing", url=request.url, missing=missing)
            raise CsvPagerError(
                ErrorCode.MANDATORY_HEADERS_MISSING, "Mandatory headers are missing"
            )

        payload = PageResult(
            results=records, page_count=page_count(total_lines, request.limit)
        ).to_json()
        await self._cache.set(page_key, payload, self._settings.cache.expiry_seconds)
        log.info(
            "page_served",
            url=request.url,
            page=request.page,
            limit=request.limit,
            records=len(records),
        )
        return payload

    async def _resolve_total_lines(self, url: str) -> int:
        key = total_cache_key(self._settings.cache.key_prefix, url)
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                total = int(cached)
            except ValueError:
                log.warning("total_cache_corrupt", url=url, value=cached[:50])
            else:
                log.debug("total_cache_hit", url=url, total_lines=total)
                return total

        body = await self._fetcher.fetch_all(url)
        total = count_total_lines(body)
        await self._cache.set(key, str(total), self._settings.cache.expiry_seconds)
        log.info("total_lines_computed", url=url, total_lines=total)
        return total

    async def _read_window(self, request: PageRequest, start: int, end: int) -> list[Record]:
        # Parser rows are 1-based with an exclusive end.
        options = ParseOptions(
            range_start=start + 1,
            range_end=end + 1,
            record_filter=contains_text(request.filter),
            max_record_chars=self._settings.parser.max_record_chars,
        )
        records: list[Record] = []
        async with self._fetcher.stream(
            request.url, self._settings.fetcher.stream_timeout_ms
        ) as chunks:
            async for record in parse_records(chunks, options):
                records.append(record)
        return records
