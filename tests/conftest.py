"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Make ``app`` importable without an editable install.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_mal_environment(monkeypatch) -> None:
    """Keep a developer's MAL_* variables from leaking into Settings()."""

    for name in ("MAL_CLIENT_ID", "MAL_REDIRECT_URI", "MAL_PAGE_SIZE", "MAL_PAGE_DELAY"):
        monkeypatch.delenv(name, raising=False)
