"""Filesystem change notifications for the application directories."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from watchfiles import Change, awatch

from polymodo.scanner import DESKTOP_SUFFIX, ChangeKind, FileChange

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterator, Iterable

log = structlog.get_logger()

_KINDS = {
    Change.added: ChangeKind.ADDED,
    Change.modified: ChangeKind.MODIFIED,
    Change.deleted: ChangeKind.DELETED,
}


def filter_changes(changes: Iterable[tuple[Change, str]]) -> list[FileChange]:
    """Keep descriptor files and directories, ignoring hidden and temp files."""
    result: list[FileChange] = []
    for change, path_str in sorted(changes, key=lambda c: c[1]):
        p = Path(path_str)

        # Editors write through ~foo, .foo.swp and foo.tmp before renaming.
        if p.name.startswith((".", "~")) or p.name.endswith(".tmp"):
            continue

        # Directories come and go with packages; a deleted one has no suffix to go by.
        if p.suffix != DESKTOP_SUFFIX and p.suffix and not p.is_dir():
            continue

        result.append(FileChange(path=path_str, kind=_KINDS[change]))
    return result


async def watch_changes(
    directories: Iterable[str],
    *,
    debounce_ms: int = 300,
    stop_event: asyncio.Event | None = None,
) -> AsyncIterator[list[FileChange]]:
    """Yield batches of relevant changes until *stop_event* is set.

    Directories that do not exist are not watched; a package that creates
    one later is picked up by the periodic rescan.
    """
    paths = [d for d in directories if Path(d).is_dir()]
    if not paths:
        log.info("watch_disabled", reason="no existing directories")
        return

    log.info("watch_started", directories=paths, debounce_ms=debounce_ms)
    async for batch in awatch(*paths, debounce=debounce_ms, stop_event=stop_event):
        relevant = filter_changes(batch)
        if relevant:
            log.debug("watch_changes", count=len(relevant))
            yield relevant
