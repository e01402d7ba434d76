"""Shared fixtures: desktop files on disk and in-memory entries."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from polymodo.models.entry import DEFAULT_ACTION_ID, Entry, EntryAction, entry_id_for

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def desktop_text(
    name: str,
    *,
    exec_: str = "true",
    generic_name: str | None = None,
    comment: str | None = None,
    keywords: tuple[str, ...] = (),
    icon: str | None = None,
    extra: str = "",
) -> str:
    lines = ["[Desktop Entry]", "Type=Application", f"Name={name}"]
    if exec_:
        lines.append(f"Exec={exec_}")
    if generic_name:
        lines.append(f"GenericName={generic_name}")
    if comment:
        lines.append(f"Comment={comment}")
    if keywords:
        lines.append(f"Keywords={';'.join(keywords)};")
    if icon:
        lines.append(f"Icon={icon}")
    if extra:
        lines.append(extra.strip())
    return "\n".join(lines) + "\n"


@pytest.fixture()
def apps_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "applications"
    directory.mkdir()
    return directory


@pytest.fixture()
def write_desktop(apps_dir: Path) -> Callable[..., Path]:
    """Write ``<filename>`` into the applications dir and return its path."""

    def _write(filename: str, name: str, **kwargs: Any) -> Path:
        path = apps_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(desktop_text(name, **kwargs), encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def make_entry() -> Callable[..., Entry]:
    """Build an Entry without touching the filesystem."""

    def _make(name: str, *, path: str | None = None, **fields: Any) -> Entry:
        source_path = path or f"/usr/share/applications/{name.lower().replace(' ', '-')}.desktop"
        exec_ = fields.pop("exec_", name.lower().replace(" ", "-"))
        fields.setdefault(
            "actions", (EntryAction(id=DEFAULT_ACTION_ID, label=name, exec=exec_),)
        )
        return Entry(id=entry_id_for(source_path), source_path=source_path, name=name, **fields)

    return _make


@pytest.fixture()
def sample_entries(make_entry: Callable[..., Entry]) -> list[Entry]:
    return [
        make_entry("Firefox Web Browser", generic_name="Web Browser", icon="firefox"),
        make_entry("File Manager", generic_name="Files", keywords=frozenset({"folder"})),
        make_entry("Files"),
        make_entry("Terminal", keywords=frozenset({"shell", "console"})),
        make_entry("Calculator"),
    ]
