"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (CSVPAGER__CACHE__EXPIRY_SECONDS=600)
  2. csvpager.yaml          (searched in cwd, then the user config dir)
  3. Hardcoded defaults

Redis connection parameters additionally honour the plain ``REDIS_HOST``,
``REDIS_PORT``, ``REDIS_USERNAME``, ``REDIS_PASSWORD`` and ``REDIS_DB``
variables used by most deployments.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from csvpager.parser import DEFAULT_MAX_RECORD_CHARS

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("csvpager")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "cache.db")

_DEFAULT_RESPONSE_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Content-Type": "application/json",
}


def _find_config_file() -> str | None:
    """Return the path of the first csvpager.yaml found, or None."""
    candidates = [
        Path("csvpager.yaml"),
        Path(platformdirs.user_config_dir("csvpager")) / "csvpager.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = 8080
    path: str = "/api"


class PaginationSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Page sizes offered to clients; the largest one caps ``limit``.
    page_sizes: list[int] = [10, 20, 50, 100]
    mandatory_headers: list[str] = ["id"]

    @field_validator("page_sizes")
    @classmethod
    def validate_page_sizes(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("page_sizes must not be empty")
        if any(size < 1 for size in v):
            raise ValueError("page_sizes must be positive")
        return v

    @property
    def max_page_size(self) -> int:
        return max(self.page_sizes)


class ParserSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Longest record buffered while looking for its end; longer records are skipped.
    max_record_chars: int = Field(default=DEFAULT_MAX_RECORD_CHARS, gt=0)


class FetcherSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stream_timeout_ms: int = 10_000
    request_timeout_seconds: float = 30.0
    max_redirects: int = 5
    block_private_ips: bool = True
    user_agent: str = "csvpager/0.1"


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: Literal["redis", "sqlite"] = "redis"
    expiry_seconds: int = 3600
    key_prefix: str = "csvpager:"
    db_path: str = _DEFAULT_DB_PATH


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = "localhost"
    port: int = 6379
    username: str = ""
    password: str = ""
    db: int = 0


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: CSVPAGER__SERVER__PORT=9090
        env_prefix="CSVPAGER__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    pagination: PaginationSettings = PaginationSettings()
    parser: ParserSettings = ParserSettings()
    fetcher: FetcherSettings = FetcherSettings()
    cache: CacheSettings = CacheSettings()
    redis: RedisSettings = Field(default_factory=RedisSettings)
    logging: LoggingSettings = LoggingSettings()
    response_headers: dict[str, str] = dict(_DEFAULT_RESPONSE_HEADERS)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
        )
