"""HTTP entry point.

``POST /api`` takes ``{url, filter?, page?, limit?}`` and answers with
``{results, pageCount}`` or ``{error}``. Every response carries the configured
response headers. Run with ``python -m csvpager.server`` or the ``csvpager``
console script.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from csvpager.config import LoggingSettings, Settings
from csvpager.errors import CsvPagerError, ErrorCode
from csvpager.fetcher import Fetcher, build_http_client
from csvpager.pagination import PageService
from csvpager.state import AppState

log = structlog.get_logger()


def configure_logging(settings: LoggingSettings) -> None:
    """Route structlog output to stderr as JSON or human-readable text."""
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def _error_response(message: str, status_code: int, headers: dict[str, str]) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


async def handle_page_request(request: Request) -> Response:
    state: AppState = request.app.state.app_state
    headers = state.settings.response_headers
    structlog.contextvars.bind_contextvars(client=request.client.host if request.client else None)
    try:
        try:
            body = await request.json()
        except ValueError as exc:
            raise CsvPagerError(ErrorCode.INVALID_INPUT, "request body must be valid JSON") from exc

        if state.fetcher is None:
            raise CsvPagerError(ErrorCode.INTERNAL_ERROR, "Fetcher is not initialised")

        async with state.open_cache() as cache:
            payload = await PageService(state.settings, cache, state.fetcher).get_page(body)
    except CsvPagerError as exc:
        if exc.status_code >= 500:
            log.error("request_failed", code=exc.code, error=exc.message)
        return _error_response(exc.message, exc.status_code, headers)
    except Exception as exc:
        log.exception("request_failed", code=ErrorCode.INTERNAL_ERROR)
        return _error_response(str(exc) or "Internal server error", 500, headers)
    finally:
        structlog.contextvars.clear_contextvars()

    return Response(payload, status_code=200, headers=headers, media_type="application/json")


async def handle_preflight(request: Request) -> Response:
    state: AppState = request.app.state.app_state
    return Response(status_code=204, headers=state.settings.response_headers)


def create_app(settings: Settings | None = None, state: AppState | None = None) -> Starlette:
    """Build the ASGI app.

    Without ``state`` the lifespan creates the shared HTTP client and fetcher.
    A provided ``state`` is installed as-is, which lets tests drive the app
    through ``httpx.ASGITransport`` (which does not run lifespans).
    """
    if settings is None:
        settings = state.settings if state is not None else Settings()

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if state is not None:
            yield
            return
        async with build_http_client(settings.fetcher) as client:
            app.state.app_state = AppState(
                settings=settings,
                fetcher=Fetcher(client, settings.fetcher),
            )
            yield

    path = settings.server.path
    app = Starlette(
        routes=[
            Route(path, handle_page_request, methods=["POST"]),
            Route(path, handle_preflight, methods=["OPTIONS"]),
        ],
        lifespan=lifespan,
    )
    if state is not None:
        app.state.app_state = state
    return app


def main() -> None:
    settings = Settings()
    configure_logging(settings.logging)
    log.info(
        "server_starting",
        host=settings.server.host,
        port=settings.server.port,
        path=settings.server.path,
        cache_backend=settings.cache.backend,
    )
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
