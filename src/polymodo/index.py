"""Versioned, copy-on-write entry index.

The store has a single writer (the indexer task, running on the event loop)
and any number of readers. Every accepted mutation builds a new mapping and
publishes it as a new ``Snapshot`` with the next generation number; a
snapshot already handed out is never modified. Readers that hold a snapshot
across suspension points take a lease so the store can report which
superseded generations are still alive.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from types import MappingProxyType
from typing import TYPE_CHECKING

import structlog

from polymodo.errors import ErrorCode, PolymodoError
from polymodo.models.entry import EntryDelta

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping

    from polymodo.models.entry import Entry

log = structlog.get_logger()


class Snapshot:
    """Immutable view of the index at one generation.

    ``entries`` is ordered by entry id so every pass over a snapshot visits
    entries in the same order.
    """

    __slots__ = ("generation", "_by_id", "entries")

    def __init__(self, generation: int, by_id: dict[str, Entry]) -> None:
        self.generation = generation
        self._by_id: Mapping[str, Entry] = MappingProxyType(by_id)
        self.entries: tuple[Entry, ...] = tuple(by_id[k] for k in sorted(by_id))

    def get(self, entry_id: str) -> Entry | None:
        return self._by_id.get(entry_id)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._by_id

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.entries)

    def __repr__(self) -> str:
        return f"<Snapshot generation={self.generation} entries={len(self.entries)}>"


class IndexStore:
    def __init__(self, entries: Iterable[Entry] = ()) -> None:
        self._current = Snapshot(0, {entry.id: entry for entry in entries})
        self._leases: dict[int, int] = {}
        self._changed = asyncio.Event()

    @property
    def generation(self) -> int:
        return self._current.generation

    def snapshot(self) -> Snapshot:
        return self._current

    def lookup(self, entry_id: str) -> Entry | None:
        return self._current.get(entry_id)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @contextmanager
    def lease(self) -> Iterator[Snapshot]:
        """Hold the current snapshot for the duration of the block."""
        snapshot = self._current
        generation = snapshot.generation
        self._leases[generation] = self._leases.get(generation, 0) + 1
        try:
            yield snapshot
        finally:
            remaining = self._leases[generation] - 1
            if remaining:
                self._leases[generation] = remaining
            else:
                del self._leases[generation]
                if generation != self._current.generation:
                    log.debug("index_snapshot_released", generation=generation)

    @property
    def retained_generations(self) -> frozenset[int]:
        """The current generation plus every superseded one still leased."""
        return frozenset(self._leases) | {self._current.generation}

    async def wait_for_change(self, generation: int) -> Snapshot:
        """Suspend until the index has moved past *generation*."""
        while self._current.generation <= generation:
            await self._changed.wait()
        return self._current

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    def _validate(self, delta: EntryDelta) -> None:
        by_id = self._current._by_id
        touched: set[str] = set()

        def claim(entry_id: str) -> None:
            if entry_id in touched:
                raise PolymodoError(
                    ErrorCode.INVALID_DELTA, f"entry {entry_id} appears twice in one delta"
                )
            touched.add(entry_id)

        for entry in delta.add:
            claim(entry.id)
            if entry.id in by_id:
                raise PolymodoError(ErrorCode.INVALID_DELTA, f"entry {entry.id} already indexed")
        for entry in delta.update:
            claim(entry.id)
            if entry.id not in by_id:
                raise PolymodoError(ErrorCode.INVALID_DELTA, f"entry {entry.id} is not indexed")
        for entry_id in delta.remove:
            claim(entry_id)
            if entry_id not in by_id:
                raise PolymodoError(ErrorCode.INVALID_DELTA, f"entry {entry_id} is not indexed")

    def apply(self, delta: EntryDelta) -> int:
        """Apply *delta* atomically and return the resulting generation.

        The whole delta is rejected if any operation is invalid. A delta that
        changes nothing is not a mutation: the generation stays as it is.
        """
        self._validate(delta)
        current = self._current
        updated = [e for e in delta.update if current._by_id[e.id] != e]
        if not (delta.add or updated or delta.remove):
            return current.generation

        by_id = dict(current._by_id)
        for entry in delta.add:
            by_id[entry.id] = entry
        for entry in updated:
            by_id[entry.id] = entry
        for entry_id in delta.remove:
            del by_id[entry_id]

        snapshot = Snapshot(current.generation + 1, by_id)
        self._current = snapshot
        log.debug(
            "index_generation_published",
            generation=snapshot.generation,
            added=len(delta.add),
            updated=len(updated),
            removed=len(delta.remove),
            entries=len(snapshot),
        )

        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        return snapshot.generation

    def diff(self, entries: Iterable[Entry]) -> EntryDelta:
        """The delta that turns the current index into exactly *entries*."""
        current = self._current
        incoming: dict[str, Entry] = {}
        for entry in entries:
            incoming[entry.id] = entry
        add = tuple(e for i, e in incoming.items() if i not in current)
        update = tuple(
            e for i, e in incoming.items() if i in current and current.get(i) != e
        )
        remove = tuple(sorted(i for i in current._by_id if i not in incoming))
        return EntryDelta(add=add, update=update, remove=remove)

    def replace_all(self, entries: Iterable[Entry]) -> int:
        """Replace the whole index in one generation."""
        return self.apply(self.diff(entries))
