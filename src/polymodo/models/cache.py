from __future__ import annotations

from pydantic import BaseModel

from polymodo.models.entry import Entry


class CachedEntry(BaseModel):
    """A parsed entry as persisted, keyed by its source file's mtime."""

    source_path: str
    mtime_ns: int
    entry: Entry
