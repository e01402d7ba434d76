"""Unit-specific fixtures (no I/O beyond in-memory SQLite and tmp_path)."""

from __future__ import annotations

import aiosqlite
import pytest

from polymodo.cache import EntryCache
from polymodo.config import MatcherSettings
from polymodo.matcher import FuzzyMatcher


@pytest.fixture()
async def cache():
    """In-memory SQLite cache for unit tests."""
    async with aiosqlite.connect(":memory:") as db:
        c = EntryCache(db)
        await c.init_db()
        yield c


@pytest.fixture()
def matcher() -> FuzzyMatcher:
    return FuzzyMatcher(MatcherSettings())
