"""SQLite cache of parsed entries and launch history.

Parsed entries are stored as JSON keyed by source path together with the
file's mtime, so a warm start only re-parses files that changed. The schema
version lives in ``PRAGMA user_version``; a mismatch drops the tables and the
next scan repopulates them.

All operations catch ``aiosqlite.Error`` and degrade: reads return an empty
result (a cache miss), writes are logged and ignored. The daemon keeps
serving from a fresh scan whatever state the database file is in.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import structlog
from pydantic import ValidationError

from polymodo.errors import ErrorCode
from polymodo.models.cache import CachedEntry
from polymodo.models.entry import Entry

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

log = structlog.get_logger()

SCHEMA_VERSION = 1

_CREATE_ENTRY_TABLE = """
CREATE TABLE IF NOT EXISTS entry_cache (
    source_path TEXT PRIMARY KEY,
    mtime_ns    INTEGER NOT NULL,
    entry       TEXT NOT NULL
)
"""

_CREATE_HISTORY_TABLE = """
CREATE TABLE IF NOT EXISTS launch_history (
    source_path TEXT PRIMARY KEY,
    score       INTEGER NOT NULL
)
"""


class EntryCache:
    """SQLite-backed store for parsed entries and launch history."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        self.discarded = False

    async def init_db(self) -> None:
        """Create tables, or recreate them if the schema version differs."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        cursor = await self._db.execute("PRAGMA user_version")
        row = await cursor.fetchone()
        found = row[0] if row else 0

        if found not in (0, SCHEMA_VERSION):
            log.warning(
                "cache_version_mismatch",
                code=ErrorCode.CACHE_VERSION_MISMATCH,
                found=found,
                expected=SCHEMA_VERSION,
            )
            await self._db.execute("DROP TABLE IF EXISTS entry_cache")
            await self._db.execute("DROP TABLE IF EXISTS launch_history")
            self.discarded = True

        await self._db.execute(_CREATE_ENTRY_TABLE)
        await self._db.execute(_CREATE_HISTORY_TABLE)
        await self._db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        await self._db.commit()

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def load_entries(self) -> dict[str, CachedEntry]:
        """Read every cached entry. Rows that no longer validate are skipped."""
        try:
            cursor = await self._db.execute(
                "SELECT source_path, mtime_ns, entry FROM entry_cache ORDER BY source_path"
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error:
            log.warning("cache_read_error", key="entry_cache", exc_info=True)
            return {}

        records: dict[str, CachedEntry] = {}
        for source_path, mtime_ns, payload in rows:
            try:
                records[source_path] = CachedEntry(
                    source_path=source_path,
                    mtime_ns=mtime_ns,
                    entry=Entry.model_validate_json(payload),
                )
            except ValidationError:
                log.warning("cache_row_invalid", path=source_path)
        return records

    async def store_entries(self, records: Iterable[CachedEntry]) -> None:
        """Replace the cached entries with *records*. Non-fatal on failure."""
        rows = [
            (record.source_path, record.mtime_ns, record.entry.model_dump_json())
            for record in records
        ]
        try:
            await self._db.execute("DELETE FROM entry_cache")
            await self._db.executemany(
                "INSERT INTO entry_cache (source_path, mtime_ns, entry) VALUES (?, ?, ?)", rows
            )
            await self._db.commit()
            log.debug("cache_entries_stored", count=len(rows))
        except aiosqlite.Error:
            log.warning("cache_write_error", key="entry_cache", exc_info=True)

    # ------------------------------------------------------------------
    # Launch history
    # ------------------------------------------------------------------

    async def get_history(self) -> dict[str, int]:
        try:
            cursor = await self._db.execute("SELECT source_path, score FROM launch_history")
            rows = await cursor.fetchall()
        except aiosqlite.Error:
            log.warning("cache_read_error", key="launch_history", exc_info=True)
            return {}
        return {source_path: int(score) for source_path, score in rows}

    async def set_history(self, scores: Mapping[str, int]) -> None:
        """Replace the stored launch history. Non-fatal on failure."""
        try:
            await self._db.execute("DELETE FROM launch_history")
            await self._db.executemany(
                "INSERT INTO launch_history (source_path, score) VALUES (?, ?)",
                list(scores.items()),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_write_error", key="launch_history", exc_info=True)
