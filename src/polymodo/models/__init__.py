from __future__ import annotations

from polymodo.models.cache import CachedEntry
from polymodo.models.entry import Entry, EntryAction, EntryDelta
from polymodo.models.ipc import ResultRow, SessionViewPayload, request_adapter
from polymodo.models.query import (
    ActionOutcome,
    Candidate,
    MatchResult,
    Query,
    RankedItem,
    SessionStatus,
    SessionView,
)

__all__ = [
    # entries
    "Entry",
    "EntryAction",
    "EntryDelta",
    # cache
    "CachedEntry",
    # queries
    "Query",
    "MatchResult",
    "Candidate",
    "RankedItem",
    "SessionStatus",
    "SessionView",
    "ActionOutcome",
    # ipc
    "request_adapter",
    "ResultRow",
    "SessionViewPayload",
]
