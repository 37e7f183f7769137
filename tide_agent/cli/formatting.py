"""Display utilities and formatting helpers."""

from __future__ import annotations

import importlib.metadata
import json
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from rich.markup import escape

from ..config import RunnerSettings
from ..errors import ConfigError
from ..sessions.models import SessionMessage
from .state import console
from .theme import THEME

MESSAGE_COLORS = {
    "user": THEME.accent,
    "assistant": THEME.primary,
    "tool_use": THEME.tool_call,
    "tool_result": THEME.tool_result,
}


def _markup(text: str, color: str) -> str:
    """Wrap text in Rich markup with the given color, escaping special chars."""
    return f"[{color}]{escape(text)}[/{color}]"


def _get_version() -> str:
    """Return the installed package version or 'dev' if not installed."""
    try:
        return importlib.metadata.version("tide-agent")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _load_settings(config_path: str | None) -> RunnerSettings:
    """Build settings from the environment, or from a YAML file; exits on bad config."""
    try:
        return RunnerSettings.from_file(config_path) if config_path else RunnerSettings()
    except ConfigError as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc


def _resolve_cwd(cwd: str | None) -> str:
    return str(Path(cwd or ".").expanduser().resolve())


def _format_token_count(tokens: int) -> str:
    """Format a token count as a human-readable string (e.g. '1.2K', '3.4M')."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)


def _format_age(seconds: float) -> str:
    """Format an elapsed duration as a compact string."""
    secs = int(seconds)
    if secs < 60:
        return f"{secs}s"
    if secs < 3600:
        return f"{secs // 60}m{secs % 60}s"
    return f"{secs // 3600}h{(secs % 3600) // 60}m"


def _format_timestamp(value: float) -> str:
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _message_label(message: SessionMessage) -> str:
    if message.type in ("tool_use", "tool_result"):
        return f"{message.type}({message.tool_name or 'unknown'})"
    return message.type


def print_message(message: SessionMessage) -> None:
    """Print one transcript message with a colored role label."""
    color = MESSAGE_COLORS.get(message.type, THEME.primary)
    stamp = f" {message.timestamp}" if message.timestamp else ""
    console.print(_markup(f"{_message_label(message)}{stamp}", f"bold {color}"))
    console.print(_markup(message.content, color))


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def print_output(text: str, is_streaming: bool = False, subagent_name: str | None = None) -> None:
    """Print a runner output line; streaming deltas are written without newlines."""
    if subagent_name:
        text = f"[{subagent_name}] {text}"
    if is_streaming:
        console.print(escape(text), end="", highlight=False)
        return
    if text.startswith("[thinking]"):
        console.print(_markup(text, THEME.thinking))
    elif text.startswith(("Using tool:", "Tool input:")):
        console.print(_markup(text, THEME.tool_call))
    elif text.startswith("[System]"):
        console.print(_markup(text, THEME.warning))
    elif text.startswith(("Tokens:", "Cost:", "Session started:")):
        console.print(_markup(text, THEME.muted))
    else:
        console.print(escape(text), highlight=False)
