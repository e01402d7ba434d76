"""Process spawning for activated entries.

The daemon hands an argument vector to the executor and gets back a pid or a
failure. It reaps the child so no zombie is left behind but otherwise does
not follow the launched process.
"""

from __future__ import annotations

import asyncio
import os
import re
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import structlog

from polymodo.errors import ErrorCode, PolymodoError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from polymodo.models.entry import Entry

log = structlog.get_logger()

# File and URL lists: polymodo never passes files to a launched application.
_DROPPED_CODES = frozenset("fFuUdDnNvm")
_FIELD_CODE = re.compile(r"%(.)")


@dataclass(frozen=True)
class LaunchHandle:
    pid: int
    argv: tuple[str, ...]


class ActionExecutor(Protocol):
    async def execute(self, argv: Sequence[str]) -> LaunchHandle: ...


def expand_exec(template: str, entry: Entry) -> list[str]:
    """Turn an Exec template into an argument vector for *entry*."""
    try:
        tokens = shlex.split(template)
    except ValueError as exc:
        raise PolymodoError(
            ErrorCode.ACTION_LAUNCH_FAILED, f"malformed Exec {template!r}: {exc}", recoverable=True
        ) from exc

    def expand(match: re.Match[str]) -> str:
        code = match.group(1)
        if code == "%":
            return "%"
        if code == "c":
            return entry.name
        if code == "k":
            return entry.source_path
        if code == "i":
            return entry.icon or ""
        return ""  # dropped and unknown codes

    argv: list[str] = []
    for token in tokens:
        if token == "%i":
            if entry.icon:
                argv.extend(["--icon", entry.icon])
            continue
        if len(token) == 2 and token[0] == "%" and token[1] in _DROPPED_CODES:
            continue
        expanded = _FIELD_CODE.sub(expand, token)
        if expanded:
            argv.append(expanded)

    if not argv:
        raise PolymodoError(
            ErrorCode.ACTION_LAUNCH_FAILED, f"Exec {template!r} has no program", recoverable=True
        )
    return argv


class SubprocessExecutor:
    """Spawns detached children in their own session."""

    def __init__(self, cwd: str | None = None) -> None:
        self.cwd = cwd or os.path.expanduser("~")
        self._reapers: set[asyncio.Task[None]] = set()

    async def execute(self, argv: Sequence[str]) -> LaunchHandle:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as exc:
            raise PolymodoError(
                ErrorCode.ACTION_LAUNCH_FAILED,
                f"failed to launch {argv[0]!r}: {exc.strerror or exc}",
                recoverable=True,
            ) from exc

        log.info("action_launched", program=argv[0], args=list(argv[1:]), pid=process.pid)
        reaper = asyncio.create_task(self._reap(process))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)
        return LaunchHandle(pid=process.pid, argv=tuple(argv))

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        log.debug("action_exited", pid=process.pid, returncode=returncode)
