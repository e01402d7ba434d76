"""polymodo daemon entrypoint.

Startup order:
  1. Load settings (validation errors abort with a non-zero exit)
  2. Configure structlog
  3. Bind the IPC socket; a live daemon on the same path is fatal
  4. Open the cache, build the index, the apps and the coordinator
  5. Initial scan, then start the indexer, the watcher and the listener
  6. Serve until SIGINT/SIGTERM
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog
from pydantic import ValidationError

from polymodo import __version__
from polymodo.apps import BUILTIN_APPS
from polymodo.cache import EntryCache
from polymodo.config import Settings
from polymodo.coordinator import QueryCoordinator
from polymodo.errors import ErrorCode, PolymodoError
from polymodo.executor import SubprocessExecutor
from polymodo.history import LaunchHistory
from polymodo.index import IndexStore
from polymodo.indexer import Indexer
from polymodo.ipc import STREAM_LIMIT, decode, encode, error_envelope, ok, view_payload
from polymodo.matcher import FuzzyMatcher
from polymodo.models.ipc import (
    ActivateRequest,
    CancelRequest,
    CloseSessionRequest,
    GoodbyeRequest,
    MoveSelectionRequest,
    OpenSessionRequest,
    PingRequest,
    QueryRequest,
    ViewRequest,
    request_adapter,
)
from polymodo.registry import AppContext, AppRegistry
from polymodo.scanner import EntryScanner
from polymodo.state import AppState
from polymodo.watcher import watch_changes

if TYPE_CHECKING:
    from polymodo.config import LoggingSettings

log = structlog.get_logger()


def configure_logging(settings: LoggingSettings) -> None:
    """Route structlog output to stderr, filtered at the configured level."""
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.format == "json":
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


# ----------------------------------------------------------------------
# Request handling
# ----------------------------------------------------------------------


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in error['loc']) or 'request'}: {error['msg']}"
        for error in exc.errors()
    )


async def handle_request(
    state: AppState, message: dict[str, Any], owned: set[str] | None = None
) -> dict[str, Any]:
    """Run one decoded request and return its response.

    Raises ``PolymodoError`` for anything the client should see as an error
    envelope. Sessions opened here are added to *owned* so the connection
    can close them when it goes away.
    """
    try:
        request = request_adapter.validate_python(message)
    except ValidationError as exc:
        raise PolymodoError(
            ErrorCode.INVALID_INPUT, _validation_message(exc), recoverable=True
        ) from exc

    coordinator = state.coordinator

    if isinstance(request, PingRequest):
        return ok(
            version=__version__,
            generation=state.index.generation,
            entries=len(state.index.snapshot()),
            apps=list(state.registry),
        )
    if isinstance(request, GoodbyeRequest):
        return ok()
    if isinstance(request, OpenSessionRequest):
        view = coordinator.open_session()
        if owned is not None:
            owned.add(view.session_id)
        return ok(session=view_payload(view))
    if isinstance(request, CloseSessionRequest):
        coordinator.view(request.session_id)  # unknown ids are an error, not a no-op
        coordinator.close_session(request.session_id)
        if owned is not None:
            owned.discard(request.session_id)
        return ok()
    if isinstance(request, QueryRequest):
        coordinator.submit(request.session_id, request.text)
        if request.wait:
            view = await coordinator.wait_idle(request.session_id)
        else:
            view = coordinator.view(request.session_id)
        return ok(session=view_payload(view))
    if isinstance(request, CancelRequest):
        coordinator.cancel(request.session_id)
        return ok(session=view_payload(coordinator.view(request.session_id)))
    if isinstance(request, MoveSelectionRequest):
        view = coordinator.move_selection(request.session_id, request.delta)
        return ok(session=view_payload(view))
    if isinstance(request, ActivateRequest):
        outcome = await coordinator.activate(
            request.session_id, request.index, request.action_id
        )
        return ok(
            outcome=outcome.model_dump(),
            session=view_payload(coordinator.view(request.session_id)),
        )
    if isinstance(request, ViewRequest):
        return ok(session=view_payload(coordinator.view(request.session_id)))
    raise PolymodoError(ErrorCode.INVALID_INPUT, f"unhandled request {request!r}")


async def serve_client(
    state: AppState, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
) -> None:
    """Answer requests on one connection until it closes or says goodbye."""
    owned: set[str] = set()
    try:
        while True:
            try:
                line = await reader.readline()
            except ValueError:
                writer.write(
                    encode(
                        error_envelope(
                            PolymodoError(ErrorCode.INVALID_INPUT, "request line too long")
                        )
                    )
                )
                await writer.drain()
                break
            if not line:
                break
            if not line.strip():
                continue

            goodbye = False
            try:
                message = decode(line)
                goodbye = message.get("type") == "goodbye"
                response = await handle_request(state, message, owned)
            except PolymodoError as exc:
                response = error_envelope(exc)
            except Exception:
                log.error("request_failed", exc_info=True)
                response = error_envelope(
                    PolymodoError(ErrorCode.INTERNAL_ERROR, "internal error", recoverable=True)
                )
            writer.write(encode(response))
            await writer.drain()
            if goodbye:
                break
    except ConnectionError:
        log.debug("client_disconnected")
    finally:
        for session_id in owned:
            state.coordinator.close_session(session_id)
        writer.close()
        with contextlib.suppress(ConnectionError):
            await writer.wait_closed()


# ----------------------------------------------------------------------
# Socket
# ----------------------------------------------------------------------


async def _daemon_alive(socket_path: str) -> bool:
    try:
        _, writer = await asyncio.open_unix_connection(socket_path)
    except OSError:
        return False
    writer.close()
    with contextlib.suppress(ConnectionError):
        await writer.wait_closed()
    return True


async def bind_socket(socket_path: str, handler: Any) -> asyncio.AbstractServer:
    """Bind the IPC socket without accepting connections yet.

    A socket file left behind by a dead daemon is removed and the bind
    retried. A socket that still answers belongs to a running daemon.
    """
    path = Path(socket_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            if await _daemon_alive(socket_path):
                raise PolymodoError(
                    ErrorCode.BIND_FAILED, f"a daemon is already listening on {socket_path}"
                )
            log.info("stale_socket_removed", path=socket_path)
            path.unlink()
        return await asyncio.start_unix_server(
            handler, path=socket_path, limit=STREAM_LIMIT, start_serving=False
        )
    except OSError as exc:
        raise PolymodoError(
            ErrorCode.BIND_FAILED, f"cannot bind {socket_path}: {exc.strerror or exc}"
        ) from exc


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


async def _open_cache(settings: Settings, stack: contextlib.AsyncExitStack) -> EntryCache | None:
    if not settings.cache.enabled:
        return None
    db_path = Path(settings.cache.db_path)
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await stack.enter_async_context(aiosqlite.connect(db_path))
        cache = EntryCache(db)
        await cache.init_db()
    except (OSError, aiosqlite.Error):
        log.warning("cache_unavailable", path=str(db_path), exc_info=True)
        return None
    return cache


async def build_state(settings: Settings, cache: EntryCache | None) -> AppState:
    index = IndexStore()
    matcher = FuzzyMatcher(settings.matcher)
    history = await LaunchHistory.load(cache)
    scanner = EntryScanner(settings.scanner.directories)
    indexer = Indexer(index, scanner, settings.scanner, cache)

    factories = {}
    for name in settings.apps.enabled:
        if name in BUILTIN_APPS:
            factories[name] = BUILTIN_APPS[name]
        else:
            log.warning("app_unknown", code=ErrorCode.APP_NOT_FOUND, app=name)
    context = AppContext(
        settings=settings,
        index=index,
        matcher=matcher,
        executor=SubprocessExecutor(),
        history=history,
        cache=cache,
    )
    registry = AppRegistry.build(factories, context)
    coordinator = QueryCoordinator(registry, settings.coordinator)
    return AppState(
        settings=settings,
        index=index,
        matcher=matcher,
        registry=registry,
        coordinator=coordinator,
        indexer=indexer,
        history=history,
        cache=cache,
    )


async def run(
    settings: Settings,
    *,
    stop: asyncio.Event | None = None,
    ready: asyncio.Event | None = None,
    install_signal_handlers: bool = True,
) -> int:
    """Run the daemon until *stop* is set. Returns the process exit code."""
    stop = stop or asyncio.Event()
    socket_path = settings.ipc.socket_path
    clients: set[asyncio.StreamWriter] = set()
    state: AppState | None = None

    async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        assert state is not None
        clients.add(writer)
        try:
            await serve_client(state, reader, writer)
        finally:
            clients.discard(writer)

    try:
        server = await bind_socket(socket_path, on_connect)
    except PolymodoError as exc:
        log.error("daemon_bind_failed", code=exc.code, path=socket_path, error=exc.message)
        return 1

    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM) if install_signal_handlers else ()
    for sig in signals:
        loop.add_signal_handler(sig, stop.set)

    tasks: list[asyncio.Task[None]] = []
    async with contextlib.AsyncExitStack() as stack:
        try:
            cache = await _open_cache(settings, stack)
            state = await build_state(settings, cache)
            await state.indexer.initial_scan()

            tasks.append(asyncio.create_task(state.indexer.supervise()))
            if settings.scanner.watch:
                changes = watch_changes(
                    settings.scanner.directories,
                    debounce_ms=settings.scanner.watch_debounce_ms,
                    stop_event=stop,
                )
                tasks.append(asyncio.create_task(state.indexer.follow(changes)))

            await server.start_serving()
            log.info(
                "daemon_ready",
                socket=socket_path,
                entries=len(state.index.snapshot()),
                apps=list(state.registry),
            )
            if ready is not None:
                ready.set()
            await stop.wait()
        finally:
            log.info("daemon_stopping")
            server.close()
            for writer in list(clients):
                writer.close()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if state is not None:
                await state.coordinator.aclose()
            await server.wait_closed()
            for sig in signals:
                loop.remove_signal_handler(sig)
            with contextlib.suppress(FileNotFoundError):
                Path(socket_path).unlink()
    return 0


def main() -> None:
    try:
        settings = Settings()
    except ValidationError as exc:
        sys.stderr.write(f"polymodo: invalid configuration\n{exc}\n")
        sys.exit(2)
    configure_logging(settings.logging)
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
