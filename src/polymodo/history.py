"""Launch history used to bias ranking toward frequently launched entries.

Each launch moves the launched entry's score halfway toward 100 and decays
every other score by 10%. Scores are small integers keyed by source path.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

    from polymodo.cache import EntryCache

MAX_SCORE = 100


def bump(value: int) -> int:
    return int(0.5 * MAX_SCORE + 0.5 * value)


def decay(value: int) -> int:
    return int(0.9 * value)


class LaunchHistory:
    def __init__(self, scores: Mapping[str, int] | None = None) -> None:
        self._scores: dict[str, int] = dict(scores or {})

    def bias(self, source_path: str) -> int:
        return self._scores.get(source_path, 0)

    def record_launch(self, source_path: str) -> None:
        scores = {path: decay(value) for path, value in self._scores.items()}
        scores[source_path] = bump(self._scores.get(source_path, 0))
        self._scores = {path: value for path, value in scores.items() if value > 0}

    def as_dict(self) -> dict[str, int]:
        return dict(self._scores)

    @classmethod
    async def load(cls, cache: EntryCache | None) -> LaunchHistory:
        if cache is None:
            return cls()
        return cls(await cache.get_history())

    async def save(self, cache: EntryCache | None) -> None:
        if cache is not None:
            await cache.set_history(self._scores)
