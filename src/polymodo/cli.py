"""polymodo command line: run the daemon or talk to it."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from pydantic import ValidationError

from polymodo import __version__
from polymodo.config import Settings
from polymodo.errors import PolymodoError
from polymodo.ipc import IpcClient, view_payload


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:
        click.echo(f"Error: invalid configuration\n{exc}", err=True)
        sys.exit(2)


@click.group()
@click.version_option(version=__version__, prog_name="polymodo")
def main() -> None:
    """Application launcher daemon with live fuzzy search."""


@main.command()
def serve() -> None:
    """Run the daemon in the foreground."""
    from polymodo.server import configure_logging, run

    settings = _load_settings()
    configure_logging(settings.logging)
    sys.exit(asyncio.run(run(settings)))


@main.command()
def ping() -> None:
    """Check that the daemon is up."""
    settings = _load_settings()

    async def _ping() -> dict[str, Any]:
        client = await IpcClient.connect(settings.ipc.socket_path)
        async with client:
            return await client.request("ping")

    try:
        reply = asyncio.run(_ping())
    except OSError as exc:
        click.echo(f"Error: daemon not reachable at {settings.ipc.socket_path}: {exc}", err=True)
        sys.exit(1)
    click.echo(
        f"polymodo {reply['version']}: {reply['entries']} entries, "
        f"generation {reply['generation']}, apps: {', '.join(reply['apps'])}"
    )


async def _query_daemon(
    settings: Settings, text: str, launch: bool
) -> tuple[dict[str, Any], dict[str, Any] | None]:
    client = await IpcClient.connect(settings.ipc.socket_path)
    async with client:
        opened = await client.request("open_session")
        session_id = opened["session"]["session_id"]
        reply = await client.request("query", session_id=session_id, text=text, wait=True)
        outcome = None
        if launch and reply["session"]["results"]:
            activated = await client.request("activate", session_id=session_id, index=0)
            outcome = activated["outcome"]
        await client.request("close_session", session_id=session_id)
    return reply["session"], outcome


async def _query_standalone(
    settings: Settings, text: str, launch: bool
) -> tuple[dict[str, Any], dict[str, Any] | None]:
    from polymodo.server import build_state

    state = await build_state(settings, cache=None)
    await state.indexer.initial_scan()
    coordinator = state.coordinator
    try:
        session_id = coordinator.open_session().session_id
        coordinator.submit(session_id, text)
        view = await coordinator.wait_idle(session_id)
        outcome = None
        if launch and view.results:
            outcome = (await coordinator.activate(session_id, 0)).model_dump()
        return view_payload(coordinator.view(session_id)), outcome
    finally:
        await coordinator.aclose()


@main.command()
@click.argument("text")
@click.option("--limit", "-n", default=10, type=int, show_default=True, help="Rows to print.")
@click.option("--launch", is_flag=True, help="Activate the best result.")
@click.option("--standalone", is_flag=True, help="Scan and search in-process, without a daemon.")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
def query(text: str, limit: int, *, launch: bool, standalone: bool, output_json: bool) -> None:
    """Search for TEXT and print the ranked results."""
    settings = _load_settings()
    runner = _query_standalone if standalone else _query_daemon
    try:
        session, outcome = asyncio.run(runner(settings, text, launch))
    except OSError as exc:
        click.echo(
            f"Error: daemon not reachable at {settings.ipc.socket_path}: {exc}. "
            "Start it with `polymodo serve` or pass --standalone.",
            err=True,
        )
        sys.exit(1)
    except PolymodoError as exc:
        click.echo(f"Error: [{exc.code}] {exc.message}", err=True)
        sys.exit(1)

    rows = session["results"][:limit]
    if output_json:
        click.echo(json.dumps({"results": rows, "outcome": outcome}, ensure_ascii=False, indent=2))
    else:
        for row in rows:
            subtitle = f"  ({row['subtitle']})" if row["subtitle"] else ""
            click.echo(f"{row['score']:8.1f}  [{row['app_id']}] {row['title']}{subtitle}")
        if not rows:
            click.echo("No results.")
        if session["excluded_apps"]:
            click.echo(f"Too slow this round: {', '.join(session['excluded_apps'])}", err=True)
        if session["failed_apps"]:
            click.echo(f"Failed this round: {', '.join(session['failed_apps'])}", err=True)

    if outcome is not None:
        if outcome["ok"]:
            detail = f"pid {outcome['pid']}" if outcome["pid"] else outcome["message"]
            click.echo(f"Launched {rows[0]['title']}: {detail}", err=True)
        else:
            click.echo(f"Error: {outcome['message']}", err=True)
            sys.exit(1)
