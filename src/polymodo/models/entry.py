from __future__ import annotations

import hashlib
import unicodedata
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

DEFAULT_ACTION_ID = "default"


def normalize_text(text: str) -> str:
    """NFKC-normalize and collapse runs of whitespace."""
    return " ".join(unicodedata.normalize("NFKC", text).split())


def entry_id_for(source_path: str) -> str:
    """Stable identifier for the descriptor at *source_path*."""
    return hashlib.blake2b(source_path.encode("utf-8"), digest_size=8).hexdigest()


def build_searchable_text(
    name: str, generic_name: str | None, keywords: frozenset[str] | set[str] | list[str]
) -> str:
    parts = [name]
    if generic_name:
        parts.append(generic_name)
    parts.extend(sorted(keywords))
    return normalize_text(" ".join(parts))


class EntryAction(BaseModel):
    """One launchable action of an entry. ``exec`` is an Exec-style template."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    exec: str


class Entry(BaseModel):
    """A single indexed application descriptor."""

    model_config = ConfigDict(frozen=True)

    id: str
    source_path: str
    name: str
    generic_name: str | None = None
    description: str | None = None  # desktop "Comment"
    categories: frozenset[str] = frozenset()
    keywords: frozenset[str] = frozenset()
    actions: tuple[EntryAction, ...] = ()
    icon: str | None = None
    terminal: bool = False
    searchable_text: str = ""  # Derived; always recomputed on validation

    @model_validator(mode="before")
    @classmethod
    def _derive_searchable_text(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("name"), str):
            data = dict(data)
            data["searchable_text"] = build_searchable_text(
                data["name"], data.get("generic_name"), data.get("keywords") or ()
            )
        return data

    def action(self, action_id: str = DEFAULT_ACTION_ID) -> EntryAction | None:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None


@dataclass(frozen=True)
class EntryDelta:
    """A batch of index mutations, applied atomically by ``IndexStore.apply``."""

    add: tuple[Entry, ...] = ()
    update: tuple[Entry, ...] = ()
    remove: tuple[str, ...] = ()  # entry ids

    def __len__(self) -> int:
        return len(self.add) + len(self.update) + len(self.remove)

    def __bool__(self) -> bool:
        return len(self) > 0
