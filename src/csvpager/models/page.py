from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationInfo, field_validator

# Column name -> value, in CSV column order. Column sets vary per source file.
Record = dict[str, str | None]


class PageRequest(BaseModel):
    """Body of a page request.

    Field order matters: pydantic reports errors in declaration order and the
    first one becomes the client-facing message. Pass the largest allowed page
    size as ``context={"max_page_size": n}`` when validating.
    """

    model_config = ConfigDict(frozen=True, validate_default=True)

    url: str | None = None
    # Strict so JSON booleans are not taken as 1 or 0.
    limit: StrictInt | None = 10
    page: StrictInt | None = 1
    filter: str | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str:
        if not v:
            raise ValueError("url is required")
        if not v.endswith(".csv"):
            raise ValueError("url should be a link to csv file")
        return v

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, v: int | None, info: ValidationInfo) -> int:
        if v is None or v < 1:
            raise ValueError("limit is required and should be greater than 0")
        max_page_size = (info.context or {}).get("max_page_size")
        if max_page_size is not None and v > max_page_size:
            raise ValueError(f"limit should not be greater than {max_page_size}")
        return v

    @field_validator("page")
    @classmethod
    def validate_page(cls, v: int | None) -> int:
        if v is None or v < 1:
            raise ValueError("page is required and should be greater than 0")
        return v


class PageResult(BaseModel):
    results: list[Record]
    page_count: int = Field(serialization_alias="pageCount")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def first_error_message(errors: list[Any]) -> str:
    """Human-readable message for the first entry of ``ValidationError.errors()``."""
    if not errors:
        return "invalid request"
    error = errors[0]
    ctx_error = (error.get("ctx") or {}).get("error")
    if ctx_error is not None:
        return str(ctx_error)
    field = ".".join(str(part) for part in error.get("loc", ()))
    return f"{field}: {error['msg']}" if field else error["msg"]
