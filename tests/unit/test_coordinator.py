"""Unit tests for the per-session query coordinator."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest
from structlog.testing import capture_logs

from polymodo.config import CoordinatorSettings
from polymodo.coordinator import QueryCoordinator, best_score_ceiling
from polymodo.errors import ErrorCode, PolymodoError
from polymodo.models.query import ActionOutcome, Candidate, SessionStatus
from polymodo.registry import AppRegistry

if TYPE_CHECKING:
    from polymodo.cancel import CancelToken
    from polymodo.models.query import Query


class FakeApp:
    """Search and action provider answering from a fixed table after a delay."""

    def __init__(
        self,
        app_id: str,
        rows: dict[str, float],
        *,
        delay: float = 0.0,
        fail_action: bool = False,
        claim_prefix: str | None = None,
    ) -> None:
        self.app_id = app_id
        self.rows = rows
        self.delay = delay
        self.fail_action = fail_action
        self.claim_prefix = claim_prefix
        self.seen: list[str] = []
        self.acted: list[tuple[str, str]] = []
        self.finished = asyncio.Event()
        self.saw_cancel = False

    def claims(self, text: str) -> bool:
        return self.claim_prefix is not None and text.startswith(self.claim_prefix)

    async def list(self, query: Query, token: CancelToken) -> list[Candidate]:
        self.seen.append(query.text)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.saw_cancel = token.cancelled
            token.raise_if_cancelled()
            return [
                Candidate(app_id=self.app_id, key=key, title=key, score=score, sort_text=key)
                for key, score in self.rows.items()
            ]
        finally:
            self.finished.set()

    async def act(self, candidate: Candidate, action_id: str) -> ActionOutcome:
        self.acted.append((candidate.key, action_id))
        if self.fail_action:
            return ActionOutcome(
                ok=False,
                app_id=self.app_id,
                key=candidate.key,
                action_id=action_id,
                message="no such program",
            )
        return ActionOutcome(
            ok=True, app_id=self.app_id, key=candidate.key, action_id=action_id, pid=4242
        )


class BrokenApp:
    app_id = "broken"

    async def list(self, query: Query, token: CancelToken) -> list[Candidate]:
        raise RuntimeError("boom")


def _coordinator(*apps: object, deadline_ms: int = 200) -> QueryCoordinator:
    registry = AppRegistry()
    for app in apps:
        registry.register(app)
    return QueryCoordinator(registry, CoordinatorSettings(fanout_deadline_ms=deadline_ms))


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestBestScoreCeiling:
    def _candidates(self, *scores: float) -> list[Candidate]:
        return [Candidate(app_id="a", key=str(n), title="", score=s) for n, s in enumerate(scores)]

    def test_best_maps_to_ceiling(self) -> None:
        assert best_score_ceiling(self._candidates(50, 25, 5), 1000.0) == [1000.0, 500.0, 100.0]

    def test_non_positive_best_maps_to_zero(self) -> None:
        assert best_score_ceiling(self._candidates(0, 0), 1000.0) == [0.0, 0.0]

    def test_empty(self) -> None:
        assert best_score_ceiling([], 1000.0) == []


# ---------------------------------------------------------------------------
# Fan-out rounds
# ---------------------------------------------------------------------------


class TestFanOut:
    async def test_merges_normalized_results(self) -> None:
        a = FakeApp("a", {"alpha": 200.0, "apex": 100.0})
        b = FakeApp("b", {"beta": 3.0, "bolt": 1.5})
        coordinator = _coordinator(a, b)
        session_id = coordinator.open_session().session_id

        coordinator.submit(session_id, "x")
        view = await coordinator.wait_idle(session_id)

        assert view.status is SessionStatus.COMPLETED
        assert [(i.key, i.score) for i in view.results] == [
            ("beta", 1000.0),
            ("alpha", 1000.0),
            ("apex", 500.0),
            ("bolt", 500.0),
        ]
        assert view.selection == 0

    async def test_slow_app_excluded_without_error(self) -> None:
        fast = FakeApp("fast", {"quick": 10.0}, delay=0.005)
        slow = FakeApp("slow", {"late": 99.0}, delay=1.0)
        coordinator = _coordinator(fast, slow, deadline_ms=200)
        session_id = coordinator.open_session().session_id

        with capture_logs() as logs:
            coordinator.submit(session_id, "q")
            view = await coordinator.wait_idle(session_id)

        assert [i.key for i in view.results] == ["quick"]
        assert view.error is None
        assert view.excluded_apps == ("slow",)
        assert "slow" in coordinator.registry
        timeouts = [e for e in logs if e["event"] == "app_round_timeout"]
        assert timeouts[0]["code"] == ErrorCode.MATCH_TIMEOUT

        # The straggler sees its round token cancelled and its answer is dropped.
        await asyncio.wait_for(slow.finished.wait(), timeout=2)
        assert slow.saw_cancel is True
        assert [i.key for i in coordinator.view(session_id).results] == ["quick"]
        await coordinator.aclose()

    async def test_failing_app_reported_as_failed(self) -> None:
        good = FakeApp("good", {"ok": 1.0})
        coordinator = _coordinator(BrokenApp(), good)
        session_id = coordinator.open_session().session_id

        coordinator.submit(session_id, "q")
        view = await coordinator.wait_idle(session_id)

        assert [i.key for i in view.results] == ["ok"]
        assert view.failed_apps == ("broken",)
        assert view.excluded_apps == ()

    async def test_failed_apps_reset_by_next_query(self) -> None:
        coordinator = _coordinator(BrokenApp(), FakeApp("good", {"ok": 1.0}))
        session_id = coordinator.open_session().session_id
        coordinator.submit(session_id, "q")
        await coordinator.wait_idle(session_id)

        coordinator.submit(session_id, "qq")
        pending = coordinator.view(session_id)

        assert pending.failed_apps == ()
        assert (await coordinator.wait_idle(session_id)).failed_apps == ("broken",)

    async def test_claimed_query_goes_to_one_app(self) -> None:
        calc = FakeApp("calc", {"42": 1.0}, claim_prefix="=")
        other = FakeApp("other", {"noise": 5.0})
        coordinator = _coordinator(other, calc)
        session_id = coordinator.open_session().session_id

        coordinator.submit(session_id, "=6*7")
        view = await coordinator.wait_idle(session_id)

        assert view.exclusive_app == "calc"
        assert [i.key for i in view.results] == ["42"]
        assert other.seen == []

    async def test_no_providers_completes_empty(self) -> None:
        coordinator = _coordinator()
        session_id = coordinator.open_session().session_id
        coordinator.submit(session_id, "q")
        view = await coordinator.wait_idle(session_id)
        assert view.status is SessionStatus.COMPLETED
        assert view.results == ()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_superseded_query_never_delivered(self) -> None:
        app = FakeApp("a", {"result": 1.0}, delay=0.05)
        coordinator = _coordinator(app)
        session_id = coordinator.open_session().session_id

        first = coordinator.submit(session_id, "f")
        second = coordinator.submit(session_id, "fi")
        assert first.token.cancelled
        assert not second.token.cancelled

        view = await coordinator.wait_idle(session_id)
        assert view.query_text == "fi"
        assert view.query_serial == second.serial
        assert view.status is SessionStatus.COMPLETED

    async def test_pending_view_has_no_stale_results(self) -> None:
        app = FakeApp("a", {"result": 1.0}, delay=0.02)
        coordinator = _coordinator(app)
        session_id = coordinator.open_session().session_id
        coordinator.submit(session_id, "a")
        await coordinator.wait_idle(session_id)

        coordinator.submit(session_id, "ab")
        view = coordinator.view(session_id)
        assert view.status is SessionStatus.PENDING
        assert view.results == ()

    async def test_cancel_before_completion_delivers_nothing(self) -> None:
        app = FakeApp("a", {"result": 1.0}, delay=0.05)
        coordinator = _coordinator(app)
        session_id = coordinator.open_session().session_id

        query = coordinator.submit(session_id, "q")
        coordinator.cancel(session_id)
        view = await coordinator.wait_idle(session_id)

        assert query.token.cancelled
        assert view.status is SessionStatus.CANCELLED
        assert view.results == ()

    async def test_close_session_cancels_pending(self) -> None:
        app = FakeApp("a", {"result": 1.0}, delay=0.05)
        coordinator = _coordinator(app)
        session_id = coordinator.open_session().session_id
        query = coordinator.submit(session_id, "q")

        coordinator.close_session(session_id)

        assert query.token.cancelled
        with pytest.raises(PolymodoError) as exc_info:
            coordinator.view(session_id)
        assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND
        await coordinator.aclose()

    async def test_sessions_are_independent(self) -> None:
        app = FakeApp("a", {"result": 1.0}, delay=0.01)
        coordinator = _coordinator(app)
        one = coordinator.open_session().session_id
        two = coordinator.open_session().session_id

        q1 = coordinator.submit(one, "x")
        coordinator.submit(two, "y")
        assert not q1.token.cancelled

        assert (await coordinator.wait_idle(one)).query_text == "x"
        assert (await coordinator.wait_idle(two)).query_text == "y"


# ---------------------------------------------------------------------------
# Selection and activation
# ---------------------------------------------------------------------------


class TestSelection:
    async def _ready(self, app: FakeApp) -> tuple[QueryCoordinator, str]:
        coordinator = _coordinator(app)
        session_id = coordinator.open_session().session_id
        coordinator.submit(session_id, "q")
        await coordinator.wait_idle(session_id)
        return coordinator, session_id

    async def test_move_selection_clamps(self) -> None:
        coordinator, session_id = await self._ready(FakeApp("a", {"x": 3.0, "y": 2.0, "z": 1.0}))
        assert coordinator.move_selection(session_id, 1).selection == 1
        assert coordinator.move_selection(session_id, 10).selection == 2
        assert coordinator.move_selection(session_id, -10).selection == 0
        assert coordinator.select(session_id, 1).selected.key == "y"

    async def test_activate_selected(self) -> None:
        app = FakeApp("a", {"x": 3.0, "y": 2.0})
        coordinator, session_id = await self._ready(app)
        coordinator.move_selection(session_id, 1)

        outcome = await coordinator.activate(session_id)

        assert outcome.ok
        assert outcome.pid == 4242
        assert app.acted == [("y", "default")]
        assert coordinator.view(session_id).error is None

    async def test_failed_activation_visible_in_view(self) -> None:
        app = FakeApp("a", {"x": 1.0}, fail_action=True)
        coordinator, session_id = await self._ready(app)

        outcome = await coordinator.activate(session_id, 0, "private")

        assert outcome.ok is False
        assert coordinator.view(session_id).error == "no such program"
        assert app.acted == [("x", "private")]

    async def test_activate_out_of_range(self) -> None:
        coordinator, session_id = await self._ready(FakeApp("a", {"x": 1.0}))
        with pytest.raises(PolymodoError) as exc_info:
            await coordinator.activate(session_id, 5)
        assert exc_info.value.code == ErrorCode.INVALID_INPUT
