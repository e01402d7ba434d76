"""JSON-lines framing over the daemon's Unix socket, and a small client.

Every request and every response is one JSON object on one line. Responses
carry ``"ok": true`` with the payload fields, or ``"ok": false`` with an
``error`` object holding ``code``, ``message`` and ``recoverable``.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from polymodo.errors import ErrorCode, PolymodoError
from polymodo.models.ipc import ResultRow, SessionViewPayload

if TYPE_CHECKING:
    from polymodo.models.query import SessionView

# Large enough for a full result list of long titles.
STREAM_LIMIT = 4 * 1024 * 1024


def encode(message: dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"


def decode(line: bytes) -> dict[str, Any]:
    try:
        message = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PolymodoError(
            ErrorCode.INVALID_INPUT, f"request is not valid JSON: {exc}", recoverable=True
        ) from exc
    if not isinstance(message, dict):
        raise PolymodoError(
            ErrorCode.INVALID_INPUT, "request must be a JSON object", recoverable=True
        )
    return message


def ok(**payload: Any) -> dict[str, Any]:
    return {"ok": True, **payload}


def error_envelope(exc: PolymodoError) -> dict[str, Any]:
    return {"ok": False, "error": exc.to_dict()}


def view_payload(view: SessionView) -> dict[str, Any]:
    rows = [
        ResultRow(
            app_id=item.app_id,
            key=item.key,
            title=item.candidate.title,
            subtitle=item.candidate.subtitle,
            icon=item.candidate.icon,
            score=round(item.score, 3),
            positions=list(item.candidate.positions),
        )
        for item in view.results
    ]
    payload = SessionViewPayload(
        session_id=view.session_id,
        status=view.status.value,
        query=view.query_text,
        query_serial=view.query_serial,
        results=rows,
        selection=view.selection,
        exclusive_app=view.exclusive_app,
        excluded_apps=list(view.excluded_apps),
        failed_apps=list(view.failed_apps),
        error=view.error,
    )
    return payload.model_dump()


class IpcClient:
    """Talks to a running daemon. Used by the CLI and the integration tests."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    @classmethod
    async def connect(cls, socket_path: str) -> IpcClient:
        reader, writer = await asyncio.open_unix_connection(socket_path, limit=STREAM_LIMIT)
        return cls(reader, writer)

    async def request(self, type: str, **fields: Any) -> dict[str, Any]:
        """Send one request and return the payload; an error envelope is raised."""
        self._writer.write(encode({"type": type, **fields}))
        await self._writer.drain()
        line = await self._reader.readline()
        if not line:
            raise ConnectionResetError("daemon closed the connection")
        response = json.loads(line)
        if not response.get("ok"):
            error = response.get("error", {})
            raise PolymodoError(
                ErrorCode(error.get("code", ErrorCode.INVALID_INPUT)),
                error.get("message", "unknown error"),
                recoverable=bool(error.get("recoverable")),
            )
        return response

    async def close(self) -> None:
        try:
            await self.request("goodbye")
        except (ConnectionError, PolymodoError):
            pass
        self._writer.close()
        await self._writer.wait_closed()

    async def __aenter__(self) -> IpcClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
