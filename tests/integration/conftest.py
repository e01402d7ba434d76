"""Integration test fixtures.

Runs a real daemon in-process on a throwaway Unix socket, backed by a
temporary applications directory and an on-disk SQLite cache.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from polymodo.config import Settings
from polymodo.ipc import IpcClient
from polymodo.server import run

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterator
    from contextlib import AbstractAsyncContextManager


@pytest.fixture()
def socket_dir() -> Iterator[Path]:
    """A short directory for sockets; tmp_path can exceed the sun_path limit."""
    directory = Path(tempfile.mkdtemp(prefix="pm", dir="/tmp"))
    yield directory
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture()
def daemon_settings(apps_dir: Path, tmp_path: Path, socket_dir: Path) -> Settings:
    return Settings(
        scanner={
            "directories": [str(apps_dir)],
            "watch": False,
            "rescan_interval_seconds": 0,
        },
        cache={"db_path": str(tmp_path / "cache.db")},
        ipc={"socket_path": str(socket_dir / "polymodo.sock")},
    )


class Daemon:
    def __init__(self, settings: Settings, stop: asyncio.Event, task: asyncio.Task[int]) -> None:
        self.settings = settings
        self.stop = stop
        self.task = task

    @property
    def socket_path(self) -> str:
        return self.settings.ipc.socket_path

    async def connect(self) -> IpcClient:
        return await IpcClient.connect(self.socket_path)

    async def shutdown(self) -> int:
        self.stop.set()
        return await asyncio.wait_for(self.task, timeout=10)


@pytest.fixture()
def start_daemon() -> Callable[[Settings], AbstractAsyncContextManager[Daemon]]:
    """Start a daemon for *settings* and stop it when the block exits."""

    @contextlib.asynccontextmanager
    async def _start(settings: Settings) -> AsyncIterator[Daemon]:
        stop = asyncio.Event()
        ready = asyncio.Event()
        task = asyncio.create_task(
            run(settings, stop=stop, ready=ready, install_signal_handlers=False)
        )
        ready_wait = asyncio.create_task(ready.wait())
        await asyncio.wait({task, ready_wait}, timeout=10, return_when=asyncio.FIRST_COMPLETED)
        ready_wait.cancel()
        if task.done():
            raise RuntimeError(f"daemon exited during startup with {task.result()}")
        daemon = Daemon(settings, stop, task)
        try:
            yield daemon
        finally:
            if not task.done():
                await daemon.shutdown()

    return _start


@pytest.fixture()
async def daemon(
    daemon_settings: Settings,
    start_daemon: Callable[[Settings], AbstractAsyncContextManager[Daemon]],
    write_desktop: Callable[..., Path],
) -> AsyncIterator[Daemon]:
    write_desktop(
        "firefox.desktop", "Firefox Web Browser", exec_="firefox %u", generic_name="Web Browser"
    )
    write_desktop("files.desktop", "Files", exec_="nautilus", keywords=("folder",))
    write_desktop("terminal.desktop", "Terminal", exec_="true", keywords=("shell",))
    async with start_daemon(daemon_settings) as running:
        yield running


@pytest.fixture()
async def client(daemon: Daemon) -> AsyncIterator[IpcClient]:
    connected = await daemon.connect()
    async with connected:
        yield connected


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Environment for running polymodo as a child process.

    Points the cache and config lookup into tmp_path so nothing touches the
    real user directories, and makes the package importable from src/.
    """
    src = Path(__file__).resolve().parents[2] / "src"
    env = {k: v for k, v in os.environ.items() if not k.startswith("POLYMODO__")}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(src), env.get("PYTHONPATH")]))
    env["XDG_CONFIG_HOME"] = str(tmp_path / "config")
    env["POLYMODO__CACHE__DB_PATH"] = str(tmp_path / "cache.db")
    env["POLYMODO__SCANNER__WATCH"] = "false"
    env.setdefault("PYTHONUNBUFFERED", "1")
    return env
