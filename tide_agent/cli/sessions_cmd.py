"""Transcript commands: history, search, activity, sessions."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict
from typing import Annotated

import typer
from rich.markup import escape
from rich.table import Table

from ..errors import SessionNotFoundError
from ..sessions import SessionLoader
from .formatting import (
    _format_age,
    _format_timestamp,
    _load_settings,
    _markup,
    _resolve_cwd,
    print_json,
    print_message,
)
from .state import app, console
from .theme import THEME

CwdOption = Annotated[
    str | None,
    typer.Option("--cwd", "-C", help="Working directory the session belongs to"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Print JSON instead of text")]
ConfigOption = Annotated[str | None, typer.Option("--config", help="YAML settings file")]


def _loader(config: str | None) -> SessionLoader:
    settings = _load_settings(config)
    return SessionLoader(settings.claude_home, settings.codex_home)


def _not_found(session_id: str, cwd: str) -> typer.Exit:
    console.print(_markup(str(SessionNotFoundError(session_id, cwd)), THEME.error))
    return typer.Exit(1)


@app.command()
def history(
    session_id: Annotated[str, typer.Argument(help="Session id")],
    cwd: CwdOption = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Messages per page")] = 50,
    offset: Annotated[
        int, typer.Option("--offset", help="Skip this many of the newest messages")
    ] = 0,
    json_out: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """Show a page of a session transcript, oldest first."""
    resolved = _resolve_cwd(cwd)
    page = asyncio.run(_loader(config).load_session(resolved, session_id, limit, offset))
    if page is None:
        raise _not_found(session_id, resolved)
    if json_out:
        print_json(page.to_dict())
        return

    for message in page.messages:
        print_message(message)
    shown = len(page.messages)
    footer = f"Showing {shown} of {page.total_count} messages"
    if page.has_more:
        footer += f" (older: --offset {offset + shown})"
    console.print(_markup(footer, THEME.muted))


@app.command()
def search(
    session_id: Annotated[str, typer.Argument(help="Session id")],
    query: Annotated[str, typer.Argument(help="Case-insensitive text to find")],
    cwd: CwdOption = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Newest matches to show")] = 50,
    json_out: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """Search a session transcript by content or tool name."""
    resolved = _resolve_cwd(cwd)
    result = asyncio.run(_loader(config).search_session(resolved, session_id, query, limit))
    if result is None:
        raise _not_found(session_id, resolved)
    if json_out:
        print_json(
            {
                "matches": [m.to_dict() for m in result.matches],
                "total_matches": result.total_matches,
            }
        )
        return

    for message in result.matches:
        print_message(message)
    console.print(
        _markup(f"{len(result.matches)} shown, {result.total_matches} total", THEME.muted)
    )


@app.command()
def activity(
    session_id: Annotated[str, typer.Argument(help="Session id")],
    cwd: CwdOption = None,
    threshold: Annotated[
        float, typer.Option("--threshold", help="Seconds of silence before a session is idle")
    ] = 60.0,
    json_out: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """Report whether the provider is still working on a session."""
    resolved = _resolve_cwd(cwd)
    status = asyncio.run(
        _loader(config).get_session_activity_status(resolved, session_id, threshold)
    )
    if status is None:
        raise _not_found(session_id, resolved)
    if json_out:
        print_json(asdict(status))
        return

    label = _markup("active", THEME.success) if status.is_active else _markup("idle", THEME.muted)
    console.print(f"Session {session_id[:8]}: {label}")
    console.print(
        _markup(
            f"last write {_format_age(status.seconds_since_last_activity)} ago, "
            f"last message: {status.last_message_type or 'none'}, "
            f"pending work: {'yes' if status.has_pending_work else 'no'}",
            THEME.muted,
        )
    )


@app.command()
def sessions(
    cwd: CwdOption = None,
    json_out: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """List Claude sessions recorded for a working directory, newest first."""
    resolved = _resolve_cwd(cwd)
    found = _loader(config).list_sessions(resolved)
    if json_out:
        print_json([asdict(s) for s in found])
        return
    if not found:
        console.print("[dim]No sessions found[/dim]")
        return

    now = time.time()
    table = Table(show_header=True, header_style=f"bold {THEME.accent}", box=None)
    table.add_column("Session")
    table.add_column("Modified")
    table.add_column("Age", justify="right")
    table.add_column("Messages", justify="right")
    table.add_column("First message", overflow="ellipsis", no_wrap=True)
    for info in found:
        table.add_row(
            info.session_id,
            _format_timestamp(info.last_modified),
            _format_age(max(0.0, now - info.last_modified)),
            str(info.message_count),
            escape(info.first_message or ""),
        )
    console.print(table)
