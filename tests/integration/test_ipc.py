"""End-to-end tests for the daemon's JSON-lines socket protocol."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from polymodo import __version__
from polymodo.errors import ErrorCode, PolymodoError

if TYPE_CHECKING:
    from polymodo.ipc import IpcClient

    from .conftest import Daemon


async def _raw_exchange(socket_path: str, payload: bytes) -> dict:
    reader, writer = await asyncio.open_unix_connection(socket_path)
    try:
        writer.write(payload)
        await writer.drain()
        return json.loads(await reader.readline())
    finally:
        writer.close()
        await writer.wait_closed()


async def _open(client: IpcClient) -> str:
    reply = await client.request("open_session")
    return reply["session"]["session_id"]


# ---------------------------------------------------------------------------
# Sessions and queries
# ---------------------------------------------------------------------------


class TestPing:
    async def test_ping_reports_index(self, client: IpcClient) -> None:
        reply = await client.request("ping")
        assert reply["version"] == __version__
        assert reply["entries"] == 3
        assert reply["generation"] == 1
        assert reply["apps"] == ["applications", "calculator"]


class TestQuery:
    async def test_open_session_is_idle(self, client: IpcClient) -> None:
        reply = await client.request("open_session")
        session = reply["session"]
        assert session["status"] == "idle"
        assert session["results"] == []

    async def test_query_with_wait_returns_committed_results(self, client: IpcClient) -> None:
        session_id = await _open(client)
        reply = await client.request("query", session_id=session_id, text="fire", wait=True)

        session = reply["session"]
        assert session["status"] == "completed"
        assert session["query"] == "fire"
        assert session["results"][0]["title"] == "Firefox Web Browser"
        assert session["results"][0]["app_id"] == "applications"
        assert session["results"][0]["positions"] == [0, 1, 2, 3]

    async def test_query_without_wait_is_pending(self, client: IpcClient) -> None:
        session_id = await _open(client)
        reply = await client.request("query", session_id=session_id, text="term")
        assert reply["session"]["status"] in {"pending", "completed"}

        # The view settles once the round commits.
        for _ in range(100):
            view = await client.request("view", session_id=session_id)
            if view["session"]["status"] == "completed":
                break
            await asyncio.sleep(0.01)
        assert view["session"]["results"][0]["title"] == "Terminal"

    async def test_selection_is_clamped(self, client: IpcClient) -> None:
        session_id = await _open(client)
        await client.request("query", session_id=session_id, text="", wait=True)

        reply = await client.request("move_selection", session_id=session_id, delta=100)
        assert reply["session"]["selection"] == 2
        reply = await client.request("move_selection", session_id=session_id, delta=-100)
        assert reply["session"]["selection"] == 0

    async def test_cancel(self, client: IpcClient) -> None:
        session_id = await _open(client)
        await client.request("query", session_id=session_id, text="fire", wait=True)
        reply = await client.request("cancel", session_id=session_id)
        assert reply["session"]["status"] == "cancelled"
        assert reply["session"]["results"] == []

    async def test_closed_session_is_gone(self, client: IpcClient) -> None:
        session_id = await _open(client)
        await client.request("close_session", session_id=session_id)
        with pytest.raises(PolymodoError) as exc_info:
            await client.request("view", session_id=session_id)
        assert exc_info.value.code is ErrorCode.SESSION_NOT_FOUND


class TestActivate:
    async def test_calculator_result(self, client: IpcClient) -> None:
        session_id = await _open(client)
        reply = await client.request("query", session_id=session_id, text="=6*7", wait=True)
        assert reply["session"]["exclusive_app"] == "calculator"
        assert [r["title"] for r in reply["session"]["results"]] == ["42"]

        activated = await client.request("activate", session_id=session_id)
        assert activated["outcome"]["ok"] is True
        assert activated["outcome"]["message"] == "42"

    async def test_launch_application(self, client: IpcClient) -> None:
        session_id = await _open(client)
        await client.request("query", session_id=session_id, text="terminal", wait=True)

        activated = await client.request("activate", session_id=session_id, index=0)
        assert activated["outcome"]["ok"] is True
        assert activated["outcome"]["pid"] > 0

    async def test_out_of_range_index(self, client: IpcClient) -> None:
        session_id = await _open(client)
        with pytest.raises(PolymodoError) as exc_info:
            await client.request("activate", session_id=session_id, index=5)
        assert exc_info.value.code is ErrorCode.INVALID_INPUT
        assert exc_info.value.recoverable


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------


class TestErrors:
    async def test_invalid_request_keeps_connection(self, client: IpcClient) -> None:
        with pytest.raises(PolymodoError) as exc_info:
            await client.request("query", session_id="x", text="a" * 501)
        assert exc_info.value.code is ErrorCode.INVALID_INPUT
        assert "500" in exc_info.value.message

        reply = await client.request("ping")
        assert reply["ok"] is True

    async def test_unknown_type(self, client: IpcClient) -> None:
        with pytest.raises(PolymodoError) as exc_info:
            await client.request("reboot")
        assert exc_info.value.code is ErrorCode.INVALID_INPUT

    async def test_unknown_session(self, client: IpcClient) -> None:
        with pytest.raises(PolymodoError) as exc_info:
            await client.request("query", session_id="nope", text="fire")
        assert exc_info.value.code is ErrorCode.SESSION_NOT_FOUND

    async def test_bad_json(self, daemon: Daemon) -> None:
        response = await _raw_exchange(daemon.socket_path, b"{not json\n")
        assert response["ok"] is False
        assert response["error"]["code"] == "INVALID_INPUT"
        assert response["error"]["recoverable"] is True

    async def test_non_object(self, daemon: Daemon) -> None:
        response = await _raw_exchange(daemon.socket_path, b"[1, 2]\n")
        assert response["error"]["code"] == "INVALID_INPUT"


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_sessions_closed_on_disconnect(self, daemon: Daemon) -> None:
        first = await daemon.connect()
        session_id = await _open(first)
        await first.close()

        second = await daemon.connect()
        async with second:
            with pytest.raises(PolymodoError) as exc_info:
                await second.request("view", session_id=session_id)
        assert exc_info.value.code is ErrorCode.SESSION_NOT_FOUND

    async def test_shutdown_removes_socket(self, daemon: Daemon) -> None:
        assert await daemon.shutdown() == 0
        assert not Path(daemon.socket_path).exists()
