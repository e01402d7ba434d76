"""Per-session query state machine and fan-out across apps.

Each keystroke issues a new query right away and cancels the previous one's
token; there is no debounce. A round sends the query to every search provider
concurrently (or only to the app that claimed it) and waits at most
``fanout_deadline_ms``. Apps that miss the deadline are left out of that
round; apps that raise are reported as failed. The merged list is committed
only if the round's query is still the session's current, uncancelled query,
and it replaces the session view in one assignment so a reader never sees a
half-merged list.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import structlog

from polymodo.cancel import Cancelled
from polymodo.errors import ErrorCode, PolymodoError
from polymodo.matcher import MatchCancelled
from polymodo.models.entry import DEFAULT_ACTION_ID
from polymodo.models.query import (
    ActionOutcome,
    Query,
    RankedItem,
    SessionStatus,
    SessionView,
)
from polymodo.registry import ActionProvider

if TYPE_CHECKING:
    from collections.abc import Coroutine, Sequence

    from polymodo.cancel import CancelToken
    from polymodo.config import CoordinatorSettings
    from polymodo.models.query import Candidate
    from polymodo.registry import AppRegistry, SearchProvider

log = structlog.get_logger()

_T = TypeVar("_T")


class ScoreNormalizer(Protocol):
    def __call__(self, candidates: Sequence[Candidate], ceiling: float) -> list[float]: ...


def best_score_ceiling(candidates: Sequence[Candidate], ceiling: float) -> list[float]:
    """Scale one app's scores so its best candidate lands on *ceiling*."""
    if not candidates:
        return []
    best = max(c.score for c in candidates)
    if best <= 0:
        return [0.0] * len(candidates)
    return [max(c.score, 0.0) / best * ceiling for c in candidates]


@dataclass
class Session:
    id: str
    view: SessionView
    query: Query | None = None
    round_done: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.round_done.set()


@dataclass(frozen=True)
class _AppAnswer:
    app_id: str
    candidates: list[Candidate] = field(default_factory=list)
    cancelled: bool = False
    failed: bool = False


class QueryCoordinator:
    def __init__(
        self,
        registry: AppRegistry,
        settings: CoordinatorSettings,
        *,
        normalizer: ScoreNormalizer = best_score_ceiling,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.normalizer = normalizer
        self._sessions: dict[str, Session] = {}
        self._tasks: set[asyncio.Task[object]] = set()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise PolymodoError(ErrorCode.SESSION_NOT_FOUND, f"no session {session_id!r}")
        return session

    def open_session(self) -> SessionView:
        session_id = uuid.uuid4().hex[:12]
        session = Session(id=session_id, view=SessionView(session_id=session_id))
        self._sessions[session_id] = session
        log.debug("session_opened", session=session_id)
        return session.view

    def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        if session.query is not None:
            session.query.token.cancel("session closed")
        session.round_done.set()
        log.debug("session_closed", session=session_id)

    def view(self, session_id: str) -> SessionView:
        return self._session(session_id).view

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _claimant(self, text: str) -> str | None:
        for app in self.registry.search_providers():
            claims = getattr(app, "claims", None)
            if callable(claims) and claims(text):
                return app.app_id
        return None

    def submit(self, session_id: str, text: str) -> Query:
        """Issue a new query for the session, superseding any pending one."""
        session = self._session(session_id)
        if session.query is not None:
            session.query.token.cancel("superseded")

        query = Query(text=text)
        exclusive = self._claimant(text)
        session.query = query
        session.view = replace(
            session.view,
            status=SessionStatus.PENDING,
            query_text=text,
            query_serial=query.serial,
            results=(),
            selection=0,
            exclusive_app=exclusive,
            excluded_apps=(),
            failed_apps=(),
            error=None,
        )
        done = asyncio.Event()
        session.round_done = done
        self._spawn(self._run_round(session, query, exclusive, done))
        return query

    def cancel(self, session_id: str) -> None:
        session = self._session(session_id)
        if session.query is None or session.query.token.cancelled:
            return
        session.query.token.cancel("cancelled by client")
        session.view = replace(session.view, status=SessionStatus.CANCELLED, results=())

    async def wait_idle(self, session_id: str) -> SessionView:
        """Wait until the session's latest round has finished or been dropped."""
        session = self._session(session_id)
        while True:
            done = session.round_done
            await done.wait()
            if session.round_done is done:
                return session.view

    def _spawn(self, coro: Coroutine[Any, Any, _T]) -> asyncio.Task[_T]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)
        return task

    def _task_finished(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("coordinator_task_error", exc_info=task.exception())

    async def _ask(self, app: SearchProvider, query: Query, token: CancelToken) -> _AppAnswer:
        try:
            candidates = await app.list(query, token)
        except (MatchCancelled, Cancelled):
            return _AppAnswer(app.app_id, cancelled=True)
        except Exception:
            log.warning("app_search_error", app=app.app_id, query=query.text, exc_info=True)
            return _AppAnswer(app.app_id, failed=True)
        return _AppAnswer(app.app_id, list(candidates))

    def _providers(self, exclusive: str | None) -> list[SearchProvider]:
        providers = self.registry.search_providers()
        if exclusive is not None:
            providers = [app for app in providers if app.app_id == exclusive]
        return providers

    async def _run_round(
        self, session: Session, query: Query, exclusive: str | None, done: asyncio.Event
    ) -> None:
        try:
            await self._fan_out(session, query, exclusive)
        finally:
            done.set()

    async def _fan_out(self, session: Session, query: Query, exclusive: str | None) -> None:
        round_token = query.token.child()
        providers = self._providers(exclusive)
        pending_answers: dict[asyncio.Task[_AppAnswer], str] = {
            self._spawn(self._ask(app, query, round_token)): app.app_id for app in providers
        }
        deadline = self.settings.fanout_deadline_ms / 1000
        done: set[asyncio.Task[_AppAnswer]] = set()
        late: set[asyncio.Task[_AppAnswer]] = set()
        if pending_answers:
            done, late = await asyncio.wait(pending_answers, timeout=deadline)

        excluded: list[str] = []
        if late:
            round_token.cancel("deadline exceeded")
            for task in late:
                app_id = pending_answers[task]
                excluded.append(app_id)
                log.info(
                    "app_round_timeout",
                    code=ErrorCode.MATCH_TIMEOUT,
                    app=app_id,
                    deadline_ms=self.settings.fanout_deadline_ms,
                    query=query.text,
                )

        answers: list[_AppAnswer] = []
        failed: list[str] = []
        for task in done:
            answer = task.result()
            if answer.failed:
                failed.append(answer.app_id)
            elif answer.cancelled:
                excluded.append(answer.app_id)
            else:
                answers.append(answer)

        if query.token.cancelled or session.query is not query:
            log.debug("round_discarded", session=session.id, query=query.text)
            return

        results = self._merge(answers)
        session.view = replace(
            session.view,
            status=SessionStatus.COMPLETED,
            results=results,
            selection=0,
            excluded_apps=tuple(sorted(excluded, key=self.registry.order)),
            failed_apps=tuple(sorted(failed, key=self.registry.order)),
        )
        log.debug(
            "round_committed",
            session=session.id,
            query=query.text,
            results=len(results),
            excluded=excluded,
            failed=failed,
        )

    def _merge(self, answers: Sequence[_AppAnswer]) -> tuple[RankedItem, ...]:
        ceiling = self.settings.score_ceiling
        ranked: list[RankedItem] = []
        for answer in answers:
            scores = self.normalizer(answer.candidates, ceiling)
            ranked.extend(
                RankedItem(candidate=c, score=s) for c, s in zip(answer.candidates, scores)
            )
        ranked.sort(
            key=lambda item: (
                -item.score,
                len(item.candidate.sort_text),
                item.candidate.title,
                self.registry.order(item.app_id),
                item.key,
            )
        )
        return tuple(ranked)

    # ------------------------------------------------------------------
    # Selection and activation
    # ------------------------------------------------------------------

    def select(self, session_id: str, index: int) -> SessionView:
        session = self._session(session_id)
        count = len(session.view.results)
        selection = min(max(index, 0), count - 1) if count else 0
        session.view = replace(session.view, selection=selection)
        return session.view

    def move_selection(self, session_id: str, delta: int) -> SessionView:
        session = self._session(session_id)
        return self.select(session_id, session.view.selection + delta)

    async def activate(
        self,
        session_id: str,
        index: int | None = None,
        action_id: str = DEFAULT_ACTION_ID,
    ) -> ActionOutcome:
        """Run an action on a result. Failures land in the session view."""
        session = self._session(session_id)
        view = session.view
        position = view.selection if index is None else index
        if not 0 <= position < len(view.results):
            raise PolymodoError(
                ErrorCode.INVALID_INPUT, f"no result at position {position}", recoverable=True
            )
        item = view.results[position]

        app = self.registry.get(item.app_id)
        if not isinstance(app, ActionProvider):
            outcome = ActionOutcome(
                ok=False,
                app_id=item.app_id,
                key=item.key,
                action_id=action_id,
                message=f"app {item.app_id!r} cannot perform actions",
            )
        else:
            try:
                outcome = await app.act(item.candidate, action_id)
            except PolymodoError as exc:
                outcome = ActionOutcome(
                    ok=False,
                    app_id=item.app_id,
                    key=item.key,
                    action_id=action_id,
                    message=exc.message,
                )

        if not outcome.ok:
            log.warning(
                "action_failed",
                code=ErrorCode.ACTION_LAUNCH_FAILED,
                session=session_id,
                app=item.app_id,
                key=item.key,
                error=outcome.message,
            )
            if session_id in self._sessions:
                session.view = replace(session.view, error=outcome.message)
        return outcome

    async def aclose(self) -> None:
        for session_id in list(self._sessions):
            self.close_session(session_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
