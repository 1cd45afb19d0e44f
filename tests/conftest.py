"""Shared fixtures: CSV fixture builders used by unit and integration tests."""

from __future__ import annotations

from collections.abc import Callable

import pytest


def build_people_csv(rows: int, header: str = "id,name,email") -> str:
    """Header plus ``rows`` data rows, without a trailing newline."""
    lines = [header]
    lines.extend(f"{i},Name {i},user{i}@example.com" for i in range(1, rows + 1))
    return "\n".join(lines)


@pytest.fixture()
def people_csv() -> Callable[..., str]:
    return build_people_csv
