"""App registry: the fixed set of result and action providers.

An app is any object with an ``app_id``. What it can do is decided by which
protocol it satisfies, not by a base class: an app with ``list`` is a search
provider, an app with ``act`` is an action provider, and it may be both.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

    from polymodo.cache import EntryCache
    from polymodo.cancel import CancelToken
    from polymodo.config import Settings
    from polymodo.executor import ActionExecutor
    from polymodo.history import LaunchHistory
    from polymodo.index import IndexStore
    from polymodo.matcher import FuzzyMatcher
    from polymodo.models.query import ActionOutcome, Candidate, Query

log = structlog.get_logger()


class Capability(StrEnum):
    SEARCH = "search"
    ACTION = "action"


@runtime_checkable
class SearchProvider(Protocol):
    app_id: str

    async def list(self, query: Query, token: CancelToken) -> list[Candidate]: ...


@runtime_checkable
class ActionProvider(Protocol):
    app_id: str

    async def act(self, candidate: Candidate, action_id: str) -> ActionOutcome: ...


def capabilities_of(app: object) -> frozenset[Capability]:
    caps = set()
    if isinstance(app, SearchProvider):
        caps.add(Capability.SEARCH)
    if isinstance(app, ActionProvider):
        caps.add(Capability.ACTION)
    return frozenset(caps)


@dataclass
class AppContext:
    """Everything an app factory may wire itself to."""

    settings: Settings
    index: IndexStore
    matcher: FuzzyMatcher
    executor: ActionExecutor
    history: LaunchHistory
    cache: EntryCache | None = None


class AppRegistry:
    def __init__(self) -> None:
        self._apps: dict[str, Any] = {}
        self._caps: dict[str, frozenset[Capability]] = {}

    def register(self, app: Any) -> None:
        app_id = getattr(app, "app_id", None)
        if not isinstance(app_id, str) or not app_id:
            raise ValueError(f"{app!r} has no app_id")
        if app_id in self._apps:
            raise ValueError(f"app {app_id!r} registered twice")
        caps = capabilities_of(app)
        if not caps:
            raise ValueError(f"app {app_id!r} provides neither search nor actions")
        self._apps[app_id] = app
        self._caps[app_id] = caps

    @classmethod
    def build(
        cls, factories: Mapping[str, Callable[[AppContext], Any]], context: AppContext
    ) -> AppRegistry:
        """Construct and register each app; a failing app is logged and left out."""
        registry = cls()
        for name, factory in factories.items():
            try:
                app = factory(context)
                registry.register(app)
            except Exception:
                log.error("app_construct_error", app=name, exc_info=True)
                continue
            caps = sorted(registry.capabilities(app.app_id))
            log.debug("app_registered", app=app.app_id, capabilities=caps)
        return registry

    def get(self, app_id: str) -> Any | None:
        return self._apps.get(app_id)

    def capabilities(self, app_id: str) -> frozenset[Capability]:
        return self._caps.get(app_id, frozenset())

    def order(self, app_id: str) -> int:
        """Registration position, used as a stable merge tie-break."""
        for position, known in enumerate(self._apps):
            if known == app_id:
                return position
        return len(self._apps)

    def search_providers(self) -> list[SearchProvider]:
        return [a for i, a in self._apps.items() if Capability.SEARCH in self._caps[i]]

    def action_providers(self) -> list[ActionProvider]:
        return [a for i, a in self._apps.items() if Capability.ACTION in self._caps[i]]

    def __contains__(self, app_id: object) -> bool:
        return app_id in self._apps

    def __iter__(self) -> Iterator[str]:
        return iter(self._apps)

    def __len__(self) -> int:
        return len(self._apps)
