"""Pytest configuration for test isolation.

The engine's database helpers keep one shared SQLAlchemy engine per process
(``db.client``), bound to the first URL they see. Tests that bootstrap their
own SQLite file would otherwise trip the "different DATABASE_URL" guard or,
worse, write into another test's database. An autouse fixture disposes the
shared engine around every test.

The workspace ``packages/`` and ``libs/db/src`` directories are put on
``sys.path`` so the suite also runs from a plain checkout.
"""

# ruff: noqa: E402, I001
from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

_ROOT = Path(__file__).resolve().parents[1]
sys.path[:0] = [
    p
    for p in (str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT))
    if p not in sys.path
]

import pytest

from db.client import dispose_engine


@pytest.fixture(autouse=True)
def _fresh_engine(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Start and finish each test without a shared engine or ambient config."""

    monkeypatch.delenv("DATABASE_URL", raising=False)
    for key in (
        "TXN_CATEGORIZER_HYBRID_THRESHOLD",
        "TXN_CATEGORIZER_AUTO_APPLY_THRESHOLD",
        "TXN_CATEGORIZER_ENABLE_LLM",
        "TXN_CATEGORIZER_LLM_MODEL",
        "TXN_CATEGORIZER_LLM_TIMEOUT_SEC",
        "TXN_CATEGORIZER_LLM_MAX_RETRIES",
        "TXN_CATEGORIZER_BATCH_CONCURRENCY",
    ):
        monkeypatch.delenv(key, raising=False)
    dispose_engine()
    yield
    dispose_engine()
