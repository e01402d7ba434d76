"""The index's single writer.

The Indexer owns every mutation of the IndexStore: the initial scan, the
incremental rescans triggered by watch notifications, and the periodic full
rescan. Parsing runs in a worker thread; deltas are applied on the loop.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from polymodo.errors import ErrorCode

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, Iterable

    from polymodo.cache import EntryCache
    from polymodo.config import ScannerSettings
    from polymodo.index import IndexStore
    from polymodo.models.cache import CachedEntry
    from polymodo.scanner import EntryScanner, FileChange

log = structlog.get_logger()

_INITIAL_BACKOFF = 0.5
_MAX_BACKOFF = 30.0


class Indexer:
    def __init__(
        self,
        index: IndexStore,
        scanner: EntryScanner,
        settings: ScannerSettings,
        cache: EntryCache | None = None,
    ) -> None:
        self.index = index
        self.scanner = scanner
        self.settings = settings
        self.cache = cache
        self._pending: asyncio.Queue[list[FileChange]] = asyncio.Queue()
        self._resync = False
        self._progressed = False

    async def full_rescan(self) -> int:
        """Scan every directory and replace the index in one generation."""
        cached: dict[str, CachedEntry] = {}
        if self.cache is not None:
            cached = await self.cache.load_entries()

        records = await asyncio.to_thread(lambda: list(self.scanner.scan_records(cached)))
        generation = self.index.replace_all(record.entry for record in records)
        if self.cache is not None:
            await self.cache.store_entries(records)

        reused = sum(1 for r in records if cached.get(r.source_path) is r)
        log.info(
            "index_scan_complete",
            entries=len(records),
            reused_from_cache=reused,
            generation=generation,
        )
        return generation

    async def initial_scan(self) -> int:
        """Run the first full scan.

        A failure is logged and leaves the index as it is; the supervised
        loop starts with a full rescan, so the daemon comes up regardless.
        """
        try:
            return await self.full_rescan()
        except Exception:
            log.error(
                "indexer_failed",
                code=ErrorCode.INDEXER_FAILED,
                phase="initial_scan",
                exc_info=True,
            )
            self._resync = True
            return self.index.generation

    async def apply_changes(self, changes: Iterable[FileChange]) -> int:
        """Re-parse only the changed paths and apply the resulting delta."""
        snapshot = self.index.snapshot()
        changes = list(changes)
        delta = await asyncio.to_thread(self.scanner.rescan, changes, snapshot)
        generation = self.index.apply(delta)
        log.debug(
            "index_changes_applied",
            changes=len(changes),
            operations=len(delta),
            generation=generation,
        )
        return generation

    def notify(self, changes: list[FileChange]) -> None:
        """Queue a batch of changes for the writer loop."""
        if changes:
            self._pending.put_nowait(changes)

    async def follow(self, source: AsyncIterable[list[FileChange]]) -> None:
        """Forward every batch from a change source to the writer loop."""
        async for changes in source:
            self.notify(changes)

    def _drain(self, first: list[FileChange]) -> list[FileChange]:
        batch = list(first)
        while not self._pending.empty():
            batch.extend(self._pending.get_nowait())
        return batch

    async def run(self) -> None:
        """Apply queued changes, and rescan everything on the interval timer."""
        interval = self.settings.rescan_interval_seconds or None
        while True:
            if self._resync:
                await self.full_rescan()
                self._resync = False
                self._progressed = True
            try:
                changes = await asyncio.wait_for(self._pending.get(), timeout=interval)
            except TimeoutError:
                await self.full_rescan()
                self._progressed = True
                continue
            await self.apply_changes(self._drain(changes))
            self._progressed = True

    async def supervise(self) -> None:
        """Run the writer loop, restarting it with backoff when it fails.

        A restarted loop begins with a full rescan, since changes queued at
        the time of the failure may have been lost. The backoff starts over
        once a restarted loop has done useful work.
        """
        backoff = _INITIAL_BACKOFF
        while True:
            self._progressed = False
            try:
                await self.run()
            except Exception:
                if self._progressed:
                    backoff = _INITIAL_BACKOFF
                log.error(
                    "indexer_failed",
                    code=ErrorCode.INDEXER_FAILED,
                    retry_in=backoff,
                    exc_info=True,
                )
                self._resync = True
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF)
