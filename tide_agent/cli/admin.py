"""Admin commands: detect, checkpoint."""

from __future__ import annotations

import os
import signal
from datetime import datetime
from typing import Annotated

import typer

from ..backends import PROVIDERS, get_backend
from ..runner import CheckpointStore
from ..runner.procinfo import pid_alive
from .formatting import _format_age, _load_settings, _markup
from .state import app, console
from .theme import THEME


@app.command()
def detect(
    config: Annotated[str | None, typer.Option("--config", help="YAML settings file")] = None,
) -> None:
    """Show which provider executables are installed."""
    settings = _load_settings(config)
    missing = 0
    for provider in PROVIDERS:
        path = get_backend(provider, settings).detect_installation()
        if path:
            console.print(f"{provider:8} {_markup(path, THEME.success)}")
        else:
            missing += 1
            console.print(f"{provider:8} {_markup('not found', THEME.warning)}")
    if missing == len(PROVIDERS):
        raise typer.Exit(1)


@app.command()
def checkpoint(
    clear: Annotated[
        bool,
        typer.Option("--clear", help="Delete the checkpoint files after listing"),
    ] = False,
    kill: Annotated[
        bool,
        typer.Option("--kill", help="Send SIGTERM to orphaned processes that are still alive"),
    ] = False,
    config: Annotated[str | None, typer.Option("--config", help="YAML settings file")] = None,
) -> None:
    """List processes recorded by the last runner checkpoint."""
    settings = _load_settings(config)
    now = datetime.now().timestamp()
    found = 0
    for provider in PROVIDERS:
        store = CheckpointStore(settings.checkpoint_file(provider))
        for info in store.load():
            found += 1
            alive = pid_alive(info.pid)
            state = _markup("alive", THEME.warning) if alive else _markup("gone", THEME.muted)
            session = info.session_id[:8] if info.session_id else "-"
            console.print(
                f"{provider:6} agent={info.agent_id} pid={info.pid} session={session} "
                f"age={_format_age(max(0.0, now - info.start_time))} {state}"
            )
            if kill and alive:
                try:
                    os.kill(info.pid, signal.SIGTERM)
                    console.print(_markup(f"  sent SIGTERM to {info.pid}", THEME.success))
                except OSError as e:
                    console.print(_markup(f"  failed to signal {info.pid}: {e}", THEME.error))
        if clear:
            store.clear()

    if not found:
        console.print("[dim]No checkpointed processes[/dim]")
    elif clear:
        console.print(_markup("Checkpoint cleared", THEME.success))
