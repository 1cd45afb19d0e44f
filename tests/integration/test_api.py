"""End-to-end tests for the page endpoint through the ASGI app."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import fakeredis
import httpx
import pytest
import respx

from csvpager.state import AppState

URL = "https://data.example.com/people.csv"


def _serve(body: str) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=body)

    return handler


def _assert_cors(response: httpx.Response) -> None:
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Content-Type"] == "application/json"


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------


class TestPages:
    async def test_returns_requested_page(
        self,
        client: httpx.AsyncClient,
        upstream: respx.Router,
        people_csv: Callable[..., str],
    ) -> None:
        upstream.get(URL).mock(side_effect=_serve(people_csv(25)))

        response = await client.post("/api", json={"url": URL, "page": 3, "limit": 10})

        assert response.status_code == 200
        _assert_cors(response)
        data = response.json()
        assert data["pageCount"] == 3
        assert [r["id"] for r in data["results"]] == ["21", "22", "23", "24", "25"]

    async def test_defaults_to_first_page_of_ten(
        self,
        client: httpx.AsyncClient,
        upstream: respx.Router,
        people_csv: Callable[..., str],
    ) -> None:
        upstream.get(URL).mock(side_effect=_serve(people_csv(25)))

        response = await client.post("/api", json={"url": URL})

        assert response.status_code == 200
        assert [r["id"] for r in response.json()["results"]] == [str(i) for i in range(1, 11)]

    async def test_repeat_request_is_byte_identical_and_cached(
        self,
        client: httpx.AsyncClient,
        upstream: respx.Router,
        people_csv: Callable[..., str],
    ) -> None:
        route = upstream.get(URL).mock(side_effect=_serve(people_csv(25)))
        body = {"url": URL, "page": 2, "limit": 10, "filter": "example"}

        first = await client.post("/api", json=body)
        second = await client.post("/api", json=body)

        assert first.status_code == second.status_code == 200
        assert first.content == second.content
        assert route.call_count == 2

    async def test_concurrent_identical_requests_agree(
        self,
        client: httpx.AsyncClient,
        upstream: respx.Router,
        people_csv: Callable[..., str],
    ) -> None:
        upstream.get(URL).mock(side_effect=_serve(people_csv(25)))
        body = {"url": URL, "page": 1, "limit": 10}

        first, second = await asyncio.gather(
            client.post("/api", json=body), client.post("/api", json=body)
        )

        assert first.status_code == second.status_code == 200
        assert first.json() == second.json()

    async def test_filter_applied(
        self,
        client: httpx.AsyncClient,
        upstream: respx.Router,
        people_csv: Callable[..., str],
    ) -> None:
        upstream.get(URL).mock(side_effect=_serve(people_csv(25)))

        response = await client.post("/api", json={"url": URL, "limit": 10, "filter": "NAME 7"})

        assert response.status_code == 200
        assert response.json()["results"] == [
            {"id": "7", "name": "Name 7", "email": "user7@example.com"}
        ]

    async def test_preflight(self, client: httpx.AsyncClient) -> None:
        response = await client.options("/api")
        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"


# ---------------------------------------------------------------------------
# Client errors
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize(
        ("body", "message"),
        [
            ({}, "url is required"),
            ({"url": "https://data.example.com/people.xlsx"}, "url should be a link to csv file"),
            ({"url": URL, "limit": 0}, "limit is required and should be greater than 0"),
            ({"url": URL, "limit": -1}, "limit is required and should be greater than 0"),
            ({"url": URL, "limit": 101}, "limit should not be greater than 100"),
            ({"url": URL, "page": 0}, "page is required and should be greater than 0"),
        ],
    )
    async def test_rejected_with_message(
        self,
        client: httpx.AsyncClient,
        upstream: respx.Router,
        body: dict[str, object],
        message: str,
    ) -> None:
        route = upstream.get(URL).mock(return_value=httpx.Response(200, text="id\n1"))

        response = await client.post("/api", json=body)

        assert response.status_code == 400
        _assert_cors(response)
        assert response.json() == {"error": message}
        assert route.call_count == 0

    async def test_invalid_json(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "request body must be valid JSON"}

    async def test_private_address_refused(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api", json={"url": "http://10.1.2.3/people.csv"})
        assert response.status_code == 400
        assert "not allowed" in response.json()["error"]

    async def test_no_records_found(
        self,
        client: httpx.AsyncClient,
        upstream: respx.Router,
        people_csv: Callable[..., str],
    ) -> None:
        upstream.get(URL).mock(side_effect=_serve(people_csv(25)))

        response = await client.post("/api", json={"url": URL, "page": 9, "limit": 10})

        assert response.status_code == 404
        _assert_cors(response)
        assert response.json() == {"error": "No records found"}

    async def test_empty_file_not_found(
        self, client: httpx.AsyncClient, upstream: respx.Router
    ) -> None:
        upstream.get(URL).mock(side_effect=_serve(""))

        response = await client.post("/api", json={"url": URL})

        assert response.status_code == 404

    async def test_mandatory_headers_missing(
        self,
        client: httpx.AsyncClient,
        upstream: respx.Router,
        people_csv: Callable[..., str],
    ) -> None:
        upstream.get(URL).mock(side_effect=_serve(people_csv(3, header="id,title,email")))

        response = await client.post("/api", json={"url": URL})

        assert response.status_code == 400
        assert response.json() == {"error": "Mandatory headers are missing"}


# ---------------------------------------------------------------------------
# Server errors
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_upstream_error(self, client: httpx.AsyncClient, upstream: respx.Router) -> None:
        upstream.get(URL).mock(return_value=httpx.Response(503))

        response = await client.post("/api", json={"url": URL})

        assert response.status_code == 500
        _assert_cors(response)
        assert response.json() == {"error": "Request failed with status code 503"}

    async def test_upstream_timeout(
        self, client: httpx.AsyncClient, upstream: respx.Router
    ) -> None:
        upstream.get(URL).mock(side_effect=httpx.ConnectTimeout("timed out"))

        response = await client.post("/api", json={"url": URL})

        assert response.status_code == 500
        assert response.json() == {"error": f"Timed out fetching {URL}"}

    async def test_cache_unavailable(
        self, client: httpx.AsyncClient, redis_server: fakeredis.FakeServer
    ) -> None:
        redis_server.connected = False

        response = await client.post("/api", json={"url": URL})

        assert response.status_code == 500
        assert response.json()["error"].startswith("Cache read failed")

    async def test_unexpected_error_carries_message_and_releases_cache(
        self, client: httpx.AsyncClient, app_state: AppState
    ) -> None:
        released: list[bool] = []

        class ExplodingCache:
            async def get(self, key: str) -> str | None:
                raise RuntimeError("boom")

            async def set(self, key: str, value: str, ttl_seconds: int) -> None:
                raise AssertionError("not reached")

        @asynccontextmanager
        async def exploding_factory() -> AsyncIterator[ExplodingCache]:
            try:
                yield ExplodingCache()
            finally:
                released.append(True)

        app_state.cache_factory = exploding_factory

        response = await client.post("/api", json={"url": URL})

        assert response.status_code == 500
        _assert_cors(response)
        assert response.json() == {"error": "boom"}
        assert released == [True]

    async def test_unexpected_error_without_message(
        self, client: httpx.AsyncClient, app_state: AppState
    ) -> None:
        class SilentCache:
            async def get(self, key: str) -> str | None:
                raise RuntimeError()

            async def set(self, key: str, value: str, ttl_seconds: int) -> None:
                pass

        @asynccontextmanager
        async def silent_factory() -> AsyncIterator[SilentCache]:
            yield SilentCache()

        app_state.cache_factory = silent_factory

        response = await client.post("/api", json={"url": URL})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
