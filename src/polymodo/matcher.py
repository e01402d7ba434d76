"""Subsequence fuzzy matching over index snapshots.

Scoring (all integers, so ranking is exact and deterministic):

- every matched character scores ``SCORE_MATCH``
- a character directly following the previous match adds ``BONUS_CONSECUTIVE``
- a match on a word boundary (text start, after a separator, camelCase hump)
  adds ``BONUS_BOUNDARY``
- a match whose case equals the query's adds ``BONUS_CASE``
- a match starting at the very first character adds ``BONUS_PREFIX``
- a gap between two matches costs ``PENALTY_GAP_START`` plus
  ``PENALTY_GAP_EXTENSION`` per additional skipped character

A pass walks the snapshot in chunks, yielding to the event loop between
chunks and checking both its cancel token and the index generation there.
Cancelled or superseded passes raise; they never return partial results.
"""

from __future__ import annotations

import asyncio
import heapq
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING

import structlog

from polymodo.models.entry import normalize_text
from polymodo.models.query import MatchResult

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Sequence

    from polymodo.cancel import CancelToken
    from polymodo.config import MatcherSettings
    from polymodo.index import IndexStore, Snapshot
    from polymodo.models.entry import Entry
    from polymodo.models.query import Query

log = structlog.get_logger()

SCORE_MATCH = 16
BONUS_CONSECUTIVE = 8
BONUS_BOUNDARY = 10
BONUS_CASE = 1
BONUS_PREFIX = 8
PENALTY_GAP_START = 3
PENALTY_GAP_EXTENSION = 1

MAX_RESTARTS = 8


class MatchCancelled(Exception):
    """The pass's token was cancelled before it finished."""


class SnapshotSuperseded(MatchCancelled):
    """The index moved to a newer generation while the pass was running."""

    def __init__(self, generation: int, current: int) -> None:
        super().__init__(f"snapshot {generation} superseded by {current}")
        self.generation = generation
        self.current = current


def _fold_char(c: str) -> str:
    lowered = c.lower()
    return lowered if len(lowered) == 1 else c


def fold(text: str) -> str:
    """Lower-case *text* without changing its length."""
    return "".join(_fold_char(c) for c in text)


@lru_cache(maxsize=16384)
def _prepare(text: str) -> tuple[str, tuple[bool, ...], int]:
    """Case-folded text (same length as *text*), boundary flags, boundary count."""
    folded = fold(text)
    boundaries = []
    prev = ""
    for c in text:
        boundaries.append(
            not prev or not prev.isalnum() or (prev.islower() and c.isupper())
        )
        prev = c
    flags = tuple(boundaries)
    return folded, flags, sum(flags)


def _is_subsequence(needle: str, haystack: str) -> bool:
    it = iter(haystack)
    return all(c in it for c in needle)


def _greedy_positions(folded_query: str, folded: str, start: int) -> list[int] | None:
    positions = [start]
    at = start + 1
    for c in folded_query[1:]:
        found = folded.find(c, at)
        if found < 0:
            return None
        positions.append(found)
        at = found + 1
    return positions


def _score_positions(
    query: str, text: str, positions: Sequence[int], boundaries: Sequence[bool]
) -> int:
    score = 0
    prev = -2
    for n, p in enumerate(positions):
        score += SCORE_MATCH
        if p == prev + 1:
            score += BONUS_CONSECUTIVE
        elif n > 0:
            score -= PENALTY_GAP_START + (p - prev - 2) * PENALTY_GAP_EXTENSION
        if boundaries[p]:
            score += BONUS_BOUNDARY
        if text[p] == query[n]:
            score += BONUS_CASE
        prev = p
    if positions[0] == 0:
        score += BONUS_PREFIX
    return score


def upper_bound(query_len: int, boundary_count: int, prefix_possible: bool) -> int:
    """Best score any text with these properties could reach for the query."""
    if query_len == 0:
        return 0
    bound = query_len * (SCORE_MATCH + BONUS_CASE)
    bound += (query_len - 1) * BONUS_CONSECUTIVE
    bound += min(query_len, boundary_count) * BONUS_BOUNDARY
    if prefix_possible:
        bound += BONUS_PREFIX
    return bound


def score(query: str, text: str) -> tuple[int, tuple[int, ...]] | None:
    """Score *query* against *text*; ``None`` if it is not a subsequence.

    Every occurrence of the first query character is tried as a start; the
    best score wins and the earliest start wins ties.
    """
    query = normalize_text(query)
    if not query:
        return 0, ()
    folded_query = fold(query)
    folded, boundaries, _ = _prepare(text)

    best: tuple[int, tuple[int, ...]] | None = None
    start = folded.find(folded_query[0])
    while start >= 0:
        positions = _greedy_positions(folded_query, folded, start)
        if positions is None:
            break  # a later start has even less text left
        value = _score_positions(query, text, positions, boundaries)
        if best is None or value > best[0]:
            best = (value, tuple(positions))
        start = folded.find(folded_query[0], start + 1)
    return best


@dataclass(frozen=True)
class MatchOutcome:
    query: str
    generation: int
    results: tuple[MatchResult, ...]
    matched_ids: frozenset[str]  # every subsequence match, before floor and top-K
    scanned: int
    pruned: int


class _Worst:
    """Heap item ordering the worst-ranked result first."""

    __slots__ = ("key", "result")

    def __init__(self, result: MatchResult) -> None:
        self.key = result.sort_key
        self.result = result

    def __lt__(self, other: _Worst) -> bool:
        return self.key > other.key


class _Accumulator:
    def __init__(self, query: str, generation: int, top_k: int, floor: int) -> None:
        self.query = normalize_text(query)
        self.folded_query = fold(self.query)
        self.generation = generation
        self.top_k = top_k
        self.floor = floor if self.query else 0
        self.heap: list[_Worst] = []
        self.matched: set[str] = set()
        self.scanned = 0
        self.pruned = 0

    def feed(self, entries: Iterable[Entry]) -> None:
        q = self.folded_query
        for entry in entries:
            self.scanned += 1
            text = entry.searchable_text
            folded, _, boundary_count = _prepare(text)
            if q and not _is_subsequence(q, folded):
                continue
            self.matched.add(entry.id)

            if len(self.heap) >= self.top_k:
                bound = upper_bound(len(q), boundary_count, folded[:1] == q[:1])
                if bound < self.heap[0].result.score:
                    self.pruned += 1
                    continue

            scored = score(self.query, text)
            if scored is None or scored[0] < self.floor:
                continue
            result = MatchResult(
                entry=entry, score=scored[0], positions=scored[1], generation=self.generation
            )
            item = _Worst(result)
            if len(self.heap) < self.top_k:
                heapq.heappush(self.heap, item)
            elif self.heap[0] < item:
                heapq.heapreplace(self.heap, item)

    def outcome(self) -> MatchOutcome:
        ranked = sorted((item.result for item in self.heap), key=lambda r: r.sort_key)
        return MatchOutcome(
            query=self.query,
            generation=self.generation,
            results=tuple(ranked),
            matched_ids=frozenset(self.matched),
            scanned=self.scanned,
            pruned=self.pruned,
        )


class MatchPass:
    """One lazily-run ranking of a snapshot against a query.

    Nothing runs until the pass is awaited or iterated. A completed pass keeps
    its outcome, so iterating it again replays the same results.
    """

    def __init__(
        self,
        matcher: FuzzyMatcher,
        snapshot: Snapshot,
        query: Query,
        *,
        token: CancelToken | None = None,
        index: IndexStore | None = None,
        within: frozenset[str] | None = None,
    ) -> None:
        self.matcher = matcher
        self.snapshot = snapshot
        self.query = query
        self.token = token if token is not None else query.token
        self.index = index
        self.within = within
        self._outcome: MatchOutcome | None = None

    def _check(self) -> None:
        if self.token.cancelled:
            raise MatchCancelled(self.token.reason or "cancelled")
        if self.index is not None and self.index.generation != self.snapshot.generation:
            raise SnapshotSuperseded(self.snapshot.generation, self.index.generation)

    async def collect(self) -> MatchOutcome:
        if self._outcome is not None:
            return self._outcome

        entries: Sequence[Entry] = self.snapshot.entries
        if self.within is not None:
            entries = [e for e in entries if e.id in self.within]

        settings = self.matcher.settings
        acc = _Accumulator(
            self.query.text, self.snapshot.generation, settings.top_k, settings.score_floor
        )
        chunk_size = settings.chunk_size
        self._check()
        for offset in range(0, len(entries), chunk_size):
            acc.feed(entries[offset : offset + chunk_size])
            await asyncio.sleep(0)
            self._check()

        self._outcome = acc.outcome()
        return self._outcome

    async def __aiter__(self) -> AsyncIterator[MatchResult]:
        outcome = await self.collect()
        for result in outcome.results:
            yield result

    def restart(self, snapshot: Snapshot) -> MatchPass:
        return MatchPass(
            self.matcher, snapshot, self.query, token=self.token, index=self.index
        )


class FuzzyMatcher:
    def __init__(self, settings: MatcherSettings) -> None:
        self.settings = settings

    def match(
        self,
        snapshot: Snapshot,
        query: Query,
        *,
        token: CancelToken | None = None,
        index: IndexStore | None = None,
        within: frozenset[str] | None = None,
    ) -> MatchPass:
        return MatchPass(self, snapshot, query, token=token, index=index, within=within)

    def rank(self, snapshot: Snapshot, text: str) -> tuple[MatchResult, ...]:
        """Rank *snapshot* synchronously, without chunking or cancellation."""
        acc = _Accumulator(
            text, snapshot.generation, self.settings.top_k, self.settings.score_floor
        )
        acc.feed(snapshot.entries)
        return acc.outcome().results

    async def search(
        self,
        index: IndexStore,
        query: Query,
        *,
        token: CancelToken | None = None,
        narrow: MatchOutcome | None = None,
    ) -> MatchOutcome:
        """Match against the index's current snapshot, restarting when it moves.

        *narrow* is the previous outcome for a query this one extends; if it
        was computed on the same generation only its matches are rescored.
        """
        for attempt in range(MAX_RESTARTS):
            with index.lease() as snapshot:
                within = None
                if (
                    narrow is not None
                    and narrow.generation == snapshot.generation
                    and fold(normalize_text(query.text)).startswith(fold(narrow.query))
                ):
                    within = narrow.matched_ids
                pass_ = self.match(snapshot, query, token=token, index=index, within=within)
                try:
                    return await pass_.collect()
                except SnapshotSuperseded as exc:
                    log.debug(
                        "match_pass_restarted",
                        query=query.text,
                        generation=exc.generation,
                        current=exc.current,
                        attempt=attempt + 1,
                    )
        raise MatchCancelled(f"index kept changing during {MAX_RESTARTS} passes")
