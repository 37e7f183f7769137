"""CLI package for tide-agent."""

from .state import app, configure_logging

# Import subcommand modules so their @app.command() decorators register
from . import admin as _admin  # noqa: F401
from . import run_cmd as _run_cmd  # noqa: F401
from . import sessions_cmd as _sessions_cmd  # noqa: F401


def cli() -> None:
    """CLI entrypoint."""
    app(prog_name="tide-agent")


__all__ = ["app", "cli", "configure_logging"]


if __name__ == "__main__":
    cli()
