from __future__ import annotations

from csvpager.models.page import PageRequest, PageResult, Record

__all__ = [
    "PageRequest",
    "PageResult",
    "Record",
]
