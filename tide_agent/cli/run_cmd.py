"""Run command: spawn a provider CLI for one turn and stream its output."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any

import typer

from ..backends import PROVIDERS, get_backend
from ..config import RunnerSettings
from ..runner import ProcessRunner
from ..sessions import SessionLoader
from ..supervisor import AgentRecord, AgentSupervisor, InMemoryAgentStore
from .formatting import (
    _format_token_count,
    _get_version,
    _load_settings,
    _markup,
    _resolve_cwd,
    print_output,
)
from .state import app, console
from .theme import THEME

CLI_AGENT_ID = "cli"
PERMISSION_MODES = ("bypass", "interactive")


class _TurnPrinter:
    """Prints supervisor notifications and records how the turn ended."""

    def __init__(self) -> None:
        self.done = asyncio.Event()
        self.finished_turn = False
        self.failed = False
        self._streaming = False

    @property
    def success(self) -> bool:
        return self.finished_turn and not self.failed

    def __call__(self, kind: str, agent_id: str, payload: dict[str, Any]) -> None:
        if kind == "output":
            if self._streaming and not payload["is_streaming"]:
                console.print()
            self._streaming = payload["is_streaming"]
            print_output(payload["text"], payload["is_streaming"], payload["subagent_name"])
        elif kind == "error":
            self.failed = True
            console.print(_markup(payload["error"], THEME.error))
        elif kind == "event" and payload["event"].type == "step_complete":
            # Claude keeps reading stdin after a turn; the turn result ends the run
            self.finished_turn = True
            self.done.set()
        elif kind == "complete":
            self.finished_turn = self.finished_turn or payload["success"]
            self.done.set()


async def _run_turn(
    settings: RunnerSettings,
    agent: AgentRecord,
    prompt: str,
    system_prompt: str | None,
) -> bool:
    runner = ProcessRunner(get_backend(agent.provider, settings), settings=settings)
    printer = _TurnPrinter()
    supervisor = AgentSupervisor(
        InMemoryAgentStore([agent]),
        {agent.provider: runner},
        SessionLoader(settings.claude_home, settings.codex_home),
        listener=printer,
    )
    for orphan in await runner.start():
        if orphan.alive:
            console.print(
                _markup(
                    f"Process {orphan.info.pid} from a previous run is still alive "
                    f"(agent {orphan.info.agent_id}).",
                    THEME.warning,
                )
            )

    try:
        await supervisor.execute_command(agent.id, prompt, system_prompt)
        if runner.is_running(agent.id) or printer.done.is_set():
            await printer.done.wait()
    finally:
        await runner.close()
        await supervisor.close()
    return printer.success


@app.command()
def run(
    prompt: Annotated[str, typer.Argument(metavar="PROMPT", help="Prompt to send")],
    provider: Annotated[
        str,
        typer.Option("--provider", "-p", help=f"Provider CLI: {', '.join(PROVIDERS)}"),
    ] = "claude",
    cwd: Annotated[
        str | None,
        typer.Option("--cwd", "-C", help="Working directory for the agent"),
    ] = None,
    model: Annotated[
        str | None,
        typer.Option("--model", "-m", help="Model to request"),
    ] = None,
    resume: Annotated[
        str | None,
        typer.Option("--resume", "-r", help="Session id to resume"),
    ] = None,
    permission_mode: Annotated[
        str,
        typer.Option("--permission-mode", help="bypass or interactive (Claude only)"),
    ] = "bypass",
    system_prompt_file: Annotated[
        str | None,
        typer.Option("--system-prompt", "-s", help="Markdown file appended to the system prompt"),
    ] = None,
    config: Annotated[
        str | None,
        typer.Option("--config", help="YAML settings file"),
    ] = None,
) -> None:
    """Run one turn of a provider CLI and stream its output."""
    if provider not in PROVIDERS:
        console.print(
            _markup(f"Unknown provider '{provider}'. Use one of: {', '.join(PROVIDERS)}", THEME.error)
        )
        raise typer.Exit(2)
    if permission_mode not in PERMISSION_MODES:
        console.print(
            _markup(
                f"Unknown permission mode '{permission_mode}'. Use one of: "
                f"{', '.join(PERMISSION_MODES)}",
                THEME.error,
            )
        )
        raise typer.Exit(2)

    system_prompt = None
    if system_prompt_file:
        path = Path(system_prompt_file).expanduser()
        if not path.is_file():
            console.print(_markup(f"System prompt file not found: {path}", THEME.error))
            raise typer.Exit(1)
        system_prompt = path.read_text(encoding="utf-8")

    settings = _load_settings(config)
    agent = AgentRecord(
        id=CLI_AGENT_ID,
        name=CLI_AGENT_ID,
        cwd=_resolve_cwd(cwd),
        provider=provider,
        session_id=resume,
        model=model,
        permission_mode=permission_mode,
    )
    console.print(_markup(f"tide-agent {_get_version()} | {provider} | {agent.cwd}", THEME.muted))

    try:
        success = asyncio.run(_run_turn(settings, agent, prompt, system_prompt))
    except KeyboardInterrupt:
        console.print(_markup("\nInterrupted", THEME.muted))
        raise typer.Exit(130)

    console.print()
    summary = f"tokens: {_format_token_count(agent.tokens_used)}"
    if agent.context_limit:
        summary += (
            f"  context: {_format_token_count(agent.context_used)}"
            f"/{_format_token_count(agent.context_limit)}"
        )
    if agent.session_id:
        summary += f"  session: {agent.session_id}"
    console.print(_markup(summary, THEME.muted))
    raise typer.Exit(0 if success else 1)
