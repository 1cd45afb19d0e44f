"""Error types shared by every layer.

A single exception class carries an ``ErrorCode``; the HTTP status a client
sees is derived from the code, so callers never pick status numbers directly.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_INPUT = "INVALID_INPUT"
    URL_NOT_ALLOWED = "URL_NOT_ALLOWED"
    MANDATORY_HEADERS_MISSING = "MANDATORY_HEADERS_MISSING"
    NO_RECORDS_FOUND = "NO_RECORDS_FOUND"
    FETCH_FAILED = "FETCH_FAILED"
    FETCH_TIMEOUT = "FETCH_TIMEOUT"
    CACHE_ERROR = "CACHE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.URL_NOT_ALLOWED: 400,
    ErrorCode.MANDATORY_HEADERS_MISSING: 400,
    ErrorCode.NO_RECORDS_FOUND: 404,
}


class CsvPagerError(Exception):
    """Expected failure with a machine-readable code and a client-safe message."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return _STATUS_CODES.get(self.code, 500)
