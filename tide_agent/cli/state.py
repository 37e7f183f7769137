"""Shared CLI state: console, app, logging setup."""

from __future__ import annotations

import logging
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

# Load .env before settings are read so env vars are available for defaults
load_dotenv()

# Rich console for all output
console = Console()

# Typer app
app = typer.Typer(
    name="tide-agent",
    help="Supervise Claude and Codex CLI agents and inspect their sessions.",
    epilog=(
        "Examples:\n"
        '  tide-agent run "Summarize the failing tests"\n'
        '  tide-agent run --provider codex --cwd ./repo "Fix the lint errors"\n'
        "  tide-agent sessions --cwd ./repo\n"
        "  tide-agent history 1b7f0c2e-... --cwd ./repo --limit 20\n"
        "  tide-agent detect"
    ),
    add_completion=False,
)


def configure_logging(verbose: bool) -> None:
    """Route library logging through Rich on the shared console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@app.callback()
def _root(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging"),
    ] = False,
) -> None:
    configure_logging(verbose)
