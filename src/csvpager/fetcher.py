"""HTTP fetcher for remote CSV resources.

Two entry points share one ``httpx.AsyncClient``:

- ``Fetcher.fetch_all`` downloads the whole body (used for the total line count).
- ``Fetcher.stream`` opens a streamed GET and yields the body as bytes chunks.

Failures surface immediately as ``CsvPagerError``; nothing is retried here.
Timeouts get their own code (``FETCH_TIMEOUT``) so callers can tell them apart
from other upstream failures. Only http(s) URLs are fetched, and literal
private or loopback IP hosts are refused on every redirect hop.
"""

from __future__ import annotations

import ipaddress
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import httpx
import structlog

from csvpager.config import FetcherSettings
from csvpager.errors import CsvPagerError, ErrorCode

log = structlog.get_logger()


def is_url_allowed(url: str, *, check_private_ips: bool = True) -> bool:
    """Return True if ``url`` is an http(s) URL whose host is not a private IP literal."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    host = parsed.hostname
    if not host:
        return False
    if not check_private_ips:
        return True
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        # Hostname, not an IP literal
        return True
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def build_http_client(
    settings: FetcherSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared client. Every request, redirects included, passes the URL guard."""
    settings = settings or FetcherSettings()

    async def guard_request(request: httpx.Request) -> None:
        if not is_url_allowed(str(request.url), check_private_ips=settings.block_private_ips):
            raise CsvPagerError(ErrorCode.URL_NOT_ALLOWED, f"URL is not allowed: {request.url}")

    return httpx.AsyncClient(
        follow_redirects=True,
        max_redirects=settings.max_redirects,
        timeout=httpx.Timeout(settings.request_timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        event_hooks={"request": [guard_request]},
        transport=transport,
    )


def _translate_error(exc: httpx.HTTPError, url: str) -> CsvPagerError:
    if isinstance(exc, httpx.TimeoutException):
        log.warning("fetch_timeout", url=url, error=str(exc))
        return CsvPagerError(ErrorCode.FETCH_TIMEOUT, f"Timed out fetching {url}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        log.warning("fetch_failed", url=url, status_code=status)
        return CsvPagerError(
            ErrorCode.FETCH_FAILED, f"Request failed with status code {status}"
        )
    log.warning("fetch_failed", url=url, error=str(exc))
    return CsvPagerError(ErrorCode.FETCH_FAILED, f"Failed to fetch {url}: {exc}")


class Fetcher:
    def __init__(self, client: httpx.AsyncClient, settings: FetcherSettings | None = None) -> None:
        self._client = client
        self._settings = settings or FetcherSettings()

    def _check_url(self, url: str) -> None:
        if not is_url_allowed(url, check_private_ips=self._settings.block_private_ips):
            raise CsvPagerError(ErrorCode.URL_NOT_ALLOWED, f"URL is not allowed: {url}")

    async def fetch_all(self, url: str) -> str:
        """GET ``url`` and return the decoded body text."""
        self._check_url(url)
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise _translate_error(exc, url) from exc
        return response.text

    @asynccontextmanager
    async def stream(
        self, url: str, timeout_ms: int | None = None
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streamed GET of ``url`` and yield its body chunks.

        ``timeout_ms`` applies to connecting, waiting for headers and each
        read; the stream fails with ``FETCH_TIMEOUT`` once it is exceeded.
        The response is closed when the context exits, so callers may stop
        reading early.
        """
        self._check_url(url)
        if timeout_ms is None:
            timeout_ms = self._settings.stream_timeout_ms
        try:
            async with self._client.stream(
                "GET", url, timeout=httpx.Timeout(timeout_ms / 1000)
            ) as response:
                response.raise_for_status()
                yield self._iter_bytes(response, url)
        except httpx.HTTPError as exc:
            raise _translate_error(exc, url) from exc

    @staticmethod
    async def _iter_bytes(response: httpx.Response, url: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            raise _translate_error(exc, url) from exc
