"""Everything the daemon holds for its lifetime, passed explicitly to handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from polymodo.cache import EntryCache
    from polymodo.config import Settings
    from polymodo.coordinator import QueryCoordinator
    from polymodo.history import LaunchHistory
    from polymodo.index import IndexStore
    from polymodo.indexer import Indexer
    from polymodo.matcher import FuzzyMatcher
    from polymodo.registry import AppRegistry


@dataclass
class AppState:
    settings: Settings
    index: IndexStore
    matcher: FuzzyMatcher
    registry: AppRegistry
    coordinator: QueryCoordinator
    indexer: Indexer
    history: LaunchHistory
    cache: EntryCache | None = None
