from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from csvpager.cache import open_cache

if TYPE_CHECKING:
    from csvpager.cache import CacheProtocol
    from csvpager.config import Settings
    from csvpager.fetcher import Fetcher

CacheFactory = Callable[[], AbstractAsyncContextManager["CacheProtocol"]]


@dataclass
class AppState:
    """Process-wide wiring shared by all requests. The lifespan owns the HTTP client.

    Holds no per-request data; the cache handle is opened per request through
    ``open_cache()``. Tests swap ``cache_factory`` to point at a fake store.
    """

    settings: Settings
    fetcher: Fetcher | None = None
    cache_factory: CacheFactory | None = None

    def open_cache(self) -> AbstractAsyncContextManager[CacheProtocol]:
        if self.cache_factory is not None:
            return self.cache_factory()
        return open_cache(self.settings)
