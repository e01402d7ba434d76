from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel

from polymodo.cancel import CancelToken
from polymodo.models.entry import Entry


@dataclass(frozen=True)
class Query:
    """One input event's worth of query text."""

    text: str
    token: CancelToken = field(default_factory=CancelToken)
    issued_at: float = field(default_factory=time.monotonic)

    @property
    def serial(self) -> int:
        return self.token.serial


@dataclass(frozen=True, slots=True)
class MatchResult:
    entry: Entry
    score: int
    positions: tuple[int, ...]
    generation: int

    @property
    def sort_key(self) -> tuple[int, int, str, str]:
        # Score descending, then shorter searchable text, then name, then id.
        return (-self.score, len(self.entry.searchable_text), self.entry.name, self.entry.id)


@dataclass(frozen=True, slots=True)
class Candidate:
    """A result offered by an app for one query."""

    app_id: str
    key: str
    title: str
    score: float
    subtitle: str | None = None
    icon: str | None = None
    positions: tuple[int, ...] = ()
    sort_text: str = ""
    entry: Entry | None = None


@dataclass(frozen=True, slots=True)
class RankedItem:
    candidate: Candidate
    score: float  # normalized across apps

    @property
    def app_id(self) -> str:
        return self.candidate.app_id

    @property
    def key(self) -> str:
        return self.candidate.key


class SessionStatus(StrEnum):
    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SessionView:
    """What a UI frame sees. Replaced wholesale, never mutated."""

    session_id: str
    status: SessionStatus = SessionStatus.IDLE
    query_text: str = ""
    query_serial: int | None = None
    results: tuple[RankedItem, ...] = ()
    selection: int = 0
    exclusive_app: str | None = None
    excluded_apps: tuple[str, ...] = ()
    failed_apps: tuple[str, ...] = ()
    error: str | None = None

    @property
    def selected(self) -> RankedItem | None:
        if 0 <= self.selection < len(self.results):
            return self.results[self.selection]
        return None


class ActionOutcome(BaseModel):
    """Result of activating an item."""

    ok: bool
    app_id: str
    key: str
    action_id: str
    pid: int | None = None
    message: str | None = None
