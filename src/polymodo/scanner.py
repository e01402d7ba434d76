"""Desktop entry discovery and parsing.

Only the ``[Desktop Entry]`` group and any ``[Desktop Action <id>]`` groups it
references are read. Localized keys are ignored. The scanner never raises for
a single bad file or directory: the file or directory is skipped and a
warning is logged with the matching error code.
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from polymodo.errors import ErrorCode, PolymodoError
from polymodo.models.cache import CachedEntry
from polymodo.models.entry import (
    DEFAULT_ACTION_ID,
    Entry,
    EntryAction,
    EntryDelta,
    entry_id_for,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping

    from polymodo.index import Snapshot

log = structlog.get_logger()

DESKTOP_SUFFIX = ".desktop"
_MAIN_GROUP = "Desktop Entry"
_ACTION_GROUP_PREFIX = "Desktop Action "


class ChangeKind(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    """A change notification for one path."""

    path: str
    kind: ChangeKind


def source_path_of(path: str | Path) -> str:
    return str(Path(path).expanduser().absolute())


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(";") if item.strip()]


def _is_true(value: str | None) -> bool:
    return value is not None and value.strip().lower() == "true"


def _read_groups(path: Path, content: str) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(
        interpolation=None,
        strict=False,
        delimiters=("=",),
        comment_prefixes=("#",),
        inline_comment_prefixes=None,
        empty_lines_in_values=False,
        default_section="\x00",  # desktop files have no DEFAULT group
    )
    parser.optionxform = str  # type: ignore[assignment,method-assign]  # keys are case-sensitive
    try:
        parser.read_string(content, source=str(path))
    except configparser.Error as exc:
        raise PolymodoError(ErrorCode.PARSE_ERROR, f"{path}: {exc}", recoverable=True) from exc
    return parser


def parse_desktop_entry(path: str | Path, content: str | None = None) -> Entry | None:
    """Parse one descriptor.

    Returns ``None`` for descriptors that are valid but must not be shown
    (hidden, ``NoDisplay``, not an application, or without ``Exec``).
    Raises ``PolymodoError(PARSE_ERROR)`` for malformed files.
    """
    path = Path(path)
    source_path = source_path_of(path)
    if content is None:
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise PolymodoError(
                ErrorCode.PARSE_ERROR, f"{path}: unreadable: {exc}", recoverable=True
            ) from exc

    parser = _read_groups(path, content)
    if not parser.has_section(_MAIN_GROUP):
        raise PolymodoError(
            ErrorCode.PARSE_ERROR, f"{path}: no [{_MAIN_GROUP}] group", recoverable=True
        )
    main = parser[_MAIN_GROUP]

    name = (main.get("Name") or "").strip()
    if not name:
        raise PolymodoError(ErrorCode.PARSE_ERROR, f"{path}: missing Name", recoverable=True)

    if main.get("Type", "Application").strip() != "Application":
        return None
    if _is_true(main.get("NoDisplay")) or _is_true(main.get("Hidden")):
        return None
    exec_line = (main.get("Exec") or "").strip()
    if not exec_line:
        return None

    actions = [EntryAction(id=DEFAULT_ACTION_ID, label=name, exec=exec_line)]
    for action_id in _split_list(main.get("Actions")):
        group = f"{_ACTION_GROUP_PREFIX}{action_id}"
        if not parser.has_section(group):
            log.debug("entry_action_missing", path=source_path, action=action_id)
            continue
        action_exec = (parser[group].get("Exec") or "").strip()
        if not action_exec or action_id == DEFAULT_ACTION_ID:
            continue
        label = (parser[group].get("Name") or action_id).strip()
        actions.append(EntryAction(id=action_id, label=label, exec=action_exec))

    return Entry(
        id=entry_id_for(source_path),
        source_path=source_path,
        name=name,
        generic_name=(main.get("GenericName") or "").strip() or None,
        description=(main.get("Comment") or "").strip() or None,
        categories=frozenset(_split_list(main.get("Categories"))),
        keywords=frozenset(_split_list(main.get("Keywords"))),
        actions=tuple(actions),
        icon=(main.get("Icon") or "").strip() or None,
        terminal=_is_true(main.get("Terminal")),
    )


def _walk_desktop_files(root: Path) -> list[Path]:
    found: list[Path] = []

    def on_error(exc: OSError) -> None:
        log.warning(
            "scan_directory_error",
            code=ErrorCode.SCAN_ERROR,
            directory=exc.filename,
            error=str(exc),
        )

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames.sort()
        for filename in sorted(filenames):
            if filename.endswith(DESKTOP_SUFFIX):
                found.append(Path(dirpath) / filename)
    return found


def iter_desktop_files(directories: Iterable[str | Path]) -> Iterator[Path]:
    """Yield every ``*.desktop`` file below *directories*, each path once."""
    seen: set[str] = set()
    for directory in directories:
        root = Path(directory).expanduser().absolute()
        if not root.exists():
            log.debug("scan_directory_missing", directory=str(root))
            continue
        if not root.is_dir():
            log.warning(
                "scan_directory_error",
                code=ErrorCode.SCAN_ERROR,
                directory=str(root),
                error="not a directory",
            )
            continue
        for path in _walk_desktop_files(root):
            key = str(path)
            if key not in seen:
                seen.add(key)
                yield path


class EntryScanner:
    """Turns directories and change notifications into entries and deltas."""

    def __init__(self, directories: Iterable[str | Path]) -> None:
        self.directories = [source_path_of(d) for d in directories]

    def load(
        self, path: Path, cached: Mapping[str, CachedEntry] | None = None
    ) -> CachedEntry | None:
        """Parse *path*, reusing the cached record when its mtime is unchanged."""
        source_path = source_path_of(path)
        try:
            mtime_ns = path.stat().st_mtime_ns
        except OSError as exc:
            log.warning(
                "entry_parse_error", code=ErrorCode.PARSE_ERROR, path=source_path, error=str(exc)
            )
            return None

        if cached is not None:
            hit = cached.get(source_path)
            if hit is not None and hit.mtime_ns == mtime_ns:
                return hit

        try:
            entry = parse_desktop_entry(path)
        except PolymodoError as exc:
            log.warning("entry_parse_error", code=exc.code, path=source_path, error=exc.message)
            return None
        if entry is None:
            log.debug("entry_not_shown", path=source_path)
            return None
        return CachedEntry(source_path=source_path, mtime_ns=mtime_ns, entry=entry)

    def scan_records(
        self, cached: Mapping[str, CachedEntry] | None = None
    ) -> Iterator[CachedEntry]:
        for path in iter_desktop_files(self.directories):
            record = self.load(path, cached)
            if record is not None:
                yield record

    def scan(self, cached: Mapping[str, CachedEntry] | None = None) -> Iterator[Entry]:
        """Lazily scan every configured directory. Each call starts a new pass."""
        for record in self.scan_records(cached):
            yield record.entry

    def is_relevant(self, path: str) -> bool:
        p = Path(path)
        if p.name.startswith((".", "~")) or p.name.endswith(".tmp"):
            return False
        return any(path == d or path.startswith(d + os.sep) for d in self.directories)

    def rescan(self, changes: Iterable[FileChange], snapshot: Snapshot) -> EntryDelta:
        """Build the delta for *changes* against *snapshot*.

        Only the changed paths are touched. A deleted directory removes every
        entry below it.
        """
        latest: dict[str, ChangeKind] = {}
        for change in changes:
            latest[source_path_of(change.path)] = change.kind

        adds: dict[str, Entry] = {}
        updates: dict[str, Entry] = {}
        removes: set[str] = set()

        def reparse(file_path: str) -> None:
            entry_id = entry_id_for(file_path)
            existing = snapshot.get(entry_id)
            record = self.load(Path(file_path))
            if record is None:
                if existing is not None:
                    removes.add(entry_id)
            elif existing is None:
                adds[entry_id] = record.entry
            elif existing != record.entry:
                updates[entry_id] = record.entry

        for path, kind in sorted(latest.items()):
            if not self.is_relevant(path):
                continue
            if kind is ChangeKind.DELETED or not os.path.exists(path):
                prefix = path + os.sep
                for entry in snapshot.entries:
                    if entry.source_path == path or entry.source_path.startswith(prefix):
                        removes.add(entry.id)
            elif os.path.isdir(path):
                for file_path in _walk_desktop_files(Path(path)):
                    reparse(str(file_path))
            elif path.endswith(DESKTOP_SUFFIX):
                reparse(path)

        for entry_id in removes:
            adds.pop(entry_id, None)
            updates.pop(entry_id, None)

        return EntryDelta(
            add=tuple(adds.values()),
            update=tuple(updates.values()),
            remove=tuple(sorted(removes)),
        )
