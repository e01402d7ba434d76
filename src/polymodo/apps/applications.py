"""The desktop applications app: fuzzy search over the index, launch on activate."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from polymodo.errors import PolymodoError
from polymodo.executor import expand_exec
from polymodo.models.query import ActionOutcome, Candidate

if TYPE_CHECKING:
    from polymodo.cache import EntryCache
    from polymodo.cancel import CancelToken
    from polymodo.executor import ActionExecutor
    from polymodo.history import LaunchHistory
    from polymodo.index import IndexStore
    from polymodo.matcher import FuzzyMatcher, MatchOutcome
    from polymodo.models.query import MatchResult, Query
    from polymodo.registry import AppContext

log = structlog.get_logger()

# Launch history scores run 0-100; this keeps the bias below one boundary bonus.
HISTORY_WEIGHT = 0.1


class ApplicationsApp:
    app_id = "applications"

    def __init__(
        self,
        index: IndexStore,
        matcher: FuzzyMatcher,
        executor: ActionExecutor,
        history: LaunchHistory,
        cache: EntryCache | None = None,
    ) -> None:
        self.index = index
        self.matcher = matcher
        self.executor = executor
        self.history = history
        self.cache = cache
        self._last: MatchOutcome | None = None

    @classmethod
    def from_context(cls, context: AppContext) -> ApplicationsApp:
        return cls(
            context.index, context.matcher, context.executor, context.history, context.cache
        )

    def _candidate(self, result: MatchResult) -> Candidate:
        entry = result.entry
        bias = self.history.bias(entry.source_path) * HISTORY_WEIGHT
        return Candidate(
            app_id=self.app_id,
            key=entry.id,
            title=entry.name,
            subtitle=entry.generic_name or entry.description,
            icon=entry.icon,
            score=result.score + bias,
            positions=result.positions,
            sort_text=entry.searchable_text,
            entry=entry,
        )

    async def list(self, query: Query, token: CancelToken) -> list[Candidate]:
        outcome = await self.matcher.search(self.index, query, token=token, narrow=self._last)
        self._last = outcome
        candidates = [self._candidate(result) for result in outcome.results]
        candidates.sort(key=lambda c: (-c.score, len(c.sort_text), c.title, c.key))
        return candidates

    def _failed(self, candidate: Candidate, action_id: str, message: str) -> ActionOutcome:
        return ActionOutcome(
            ok=False, app_id=self.app_id, key=candidate.key, action_id=action_id, message=message
        )

    async def act(self, candidate: Candidate, action_id: str) -> ActionOutcome:
        entry = self.index.lookup(candidate.key)
        if entry is None:
            return self._failed(candidate, action_id, f"{candidate.title} is no longer installed")
        action = entry.action(action_id)
        if action is None:
            return self._failed(candidate, action_id, f"{entry.name} has no action {action_id!r}")

        try:
            handle = await self.executor.execute(expand_exec(action.exec, entry))
        except PolymodoError as exc:
            log.warning("action_launch_failed", code=exc.code, entry=entry.id, error=exc.message)
            return self._failed(candidate, action_id, exc.message)

        self.history.record_launch(entry.source_path)
        await self.history.save(self.cache)
        return ActionOutcome(
            ok=True, app_id=self.app_id, key=entry.id, action_id=action_id, pid=handle.pid
        )
