"""Agent state glue over the process runners.

``AgentSupervisor`` owns the callbacks the runners report into and turns
them into agent record updates: status, current tool, session id, token and
context accounting. It also recovers Codex sessions whose resume state went
stale, using the transcript loader to carry recent history into a fresh
session.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, fields
from typing import Any, Protocol

from .accounting import (
    DEFAULT_CONTEXT_WINDOW,
    ContextAccountant,
    ContextStats,
    UsageStats,
    parse_context_output,
    parse_usage_output,
)
from .core.events import RunnerCallbacks, StandardEvent
from .core.text import truncate
from .core.types import CodexOptions, RunnerRequest
from .errors import AgentNotFoundError, BackendNotFoundError
from .runner.procinfo import find_processes_in_cwd
from .runner.runner import ProcessRunner
from .sessions.loader import SessionLoader
from .sessions.models import SessionMessage

logger = logging.getLogger(__name__)

CODEX_RECOVERABLE_RESUME_ERRORS = (
    "state db missing rollout path for thread",
    "killing the current session",
)
CODEX_RECOVERY_HISTORY_LIMIT = 12
CODEX_RECOVERY_LINE_MAX_CHARS = 400
STALE_SESSION_NOTICE = "[System] Codex session state was stale. Retrying with a fresh session…"
SYSTEM_COMMAND_PREFIX = "[System:"
CURRENT_TASK_MAX_CHARS = 100
# Seconds a stdin turn may go without output before the process is respawned
STDIN_ACTIVITY_TIMEOUT = 10.0

# (kind, agent_id, payload); kinds: event, output, session_id, complete, error
EventListener = Callable[[str, str, dict[str, Any]], None]
ProcessProbe = Callable[[str, str], bool]


@dataclass
class AgentRecord:
    """Mutable state of one supervised agent."""

    id: str
    name: str
    cwd: str
    provider: str = "claude"
    status: str = "idle"  # "idle", "working" or "error"
    session_id: str | None = None
    model: str | None = None
    permission_mode: str = "bypass"
    use_chrome: bool = False
    codex: CodexOptions | None = None
    tokens_used: int = 0
    context_used: int = 0
    context_limit: int = DEFAULT_CONTEXT_WINDOW
    context_stats: ContextStats | None = None
    usage_stats: UsageStats | None = None
    current_task: str | None = None
    current_tool: str | None = None
    last_assigned_task: str | None = None
    is_detached: bool = False


class AgentStore(Protocol):
    """Storage interface for agent records."""

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        """Return the agent, or None if unknown."""

    def update_agent(self, agent_id: str, **changes: Any) -> AgentRecord | None:
        """Apply field changes; returns the updated agent, or None if unknown."""

    def all_agents(self) -> list[AgentRecord]:
        """Return every known agent."""


class InMemoryAgentStore:
    """Dict-backed ``AgentStore`` implementation."""

    def __init__(self, agents: list[AgentRecord] | None = None) -> None:
        self._agents = {agent.id: agent for agent in agents or []}
        self._field_names = {f.name for f in fields(AgentRecord)}

    def add(self, agent: AgentRecord) -> None:
        self._agents[agent.id] = agent

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        return self._agents.get(agent_id)

    def update_agent(self, agent_id: str, **changes: Any) -> AgentRecord | None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        unknown = set(changes) - self._field_names
        if unknown:
            raise TypeError(f"Unknown agent fields: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            setattr(agent, name, value)
        return agent

    def all_agents(self) -> list[AgentRecord]:
        return list(self._agents.values())


class NarrativeSink(Protocol):
    """Receives every event for human-readable activity summaries."""

    def generate(self, agent_id: str, event: StandardEvent) -> Any:
        """Consume an event; may return an awaitable."""


def detect_recoverable_resume_error(error: str) -> str | None:
    lowered = (error or "").lower()
    for marker in CODEX_RECOVERABLE_RESUME_ERRORS:
        if marker in lowered:
            return marker
    return None


def _role_label(message: SessionMessage) -> str:
    if message.type == "assistant":
        return "Assistant"
    if message.type == "user":
        return "User"
    if message.type == "tool_use":
        return f"ToolUse({message.tool_name or 'unknown'})"
    return f"ToolResult({message.tool_name or 'unknown'})"


def build_recovery_prompt(session_id: str, messages: list[SessionMessage]) -> str:
    """System prompt that replays recent history into a fresh Codex session."""
    lines = []
    for message in messages[-CODEX_RECOVERY_HISTORY_LIMIT:]:
        content = re.sub(r"\s+", " ", message.content or "").strip()
        lines.append(f"{_role_label(message)}: {truncate(content, CODEX_RECOVERY_LINE_MAX_CHARS)}")
    return "\n\n".join(
        [
            f"Previous Codex session ({session_id}) could not be resumed due to stale state.",
            "Use this recovered recent transcript to continue seamlessly:",
            "\n".join(lines),
            "Continue with the latest user request. If context is still ambiguous, "
            "ask a focused clarifying question.",
        ]
    )


def _default_process_probe(provider: str, cwd: str) -> bool:
    return bool(find_processes_in_cwd(provider, cwd))


class AgentSupervisor:
    """Routes commands to the provider runners and keeps agent records current.

    The supervisor installs its own :class:`RunnerCallbacks` on every runner
    it is given, so runners can be built without callbacks.
    """

    def __init__(
        self,
        store: AgentStore,
        runners: dict[str, ProcessRunner],
        loader: SessionLoader,
        accountant: ContextAccountant | None = None,
        narrative: NarrativeSink | None = None,
        *,
        listener: EventListener | None = None,
        process_probe: ProcessProbe | None = None,
        idle_delay: float = 0.2,
        recovery_delay: float = 0.5,
        stdin_timeout: float = STDIN_ACTIVITY_TIMEOUT,
    ) -> None:
        self.store = store
        self.runners = runners
        self.loader = loader
        self.accountant = accountant or ContextAccountant()
        self.narrative = narrative
        self.listener = listener
        self._probe = process_probe or _default_process_probe
        self._idle_delay = idle_delay
        self._recovery_delay = recovery_delay
        self._stdin_timeout = stdin_timeout
        self._stdin_watchdogs: dict[str, asyncio.TimerHandle] = {}
        self._recovery_state: dict[str, tuple[str, int]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self.callbacks = RunnerCallbacks(
            on_event=self.handle_event,
            on_output=self.handle_output,
            on_session_id=self.handle_session_id,
            on_complete=self.handle_complete,
            on_error=self.handle_error,
        )
        for runner in runners.values():
            runner.callbacks = self.callbacks

    # -- lookups -------------------------------------------------------------

    def _agent(self, agent_id: str) -> AgentRecord:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def _runner(self, provider: str) -> ProcessRunner:
        runner = self.runners.get(provider)
        if runner is None:
            raise BackendNotFoundError(provider, list(self.runners))
        return runner

    # -- commands ------------------------------------------------------------

    async def execute_command(
        self,
        agent_id: str,
        command: str,
        system_prompt: str | None = None,
        force_new_session: bool = False,
    ) -> None:
        """Start a new process turn for the agent, resuming its session if any."""
        agent = self._agent(agent_id)
        runner = self._runner(agent.provider)
        self._clear_stdin_watchdog(agent_id)
        changes: dict[str, Any] = {
            "status": "working",
            "current_task": command[:CURRENT_TASK_MAX_CHARS],
            "is_detached": False,
        }
        if not command.startswith(SYSTEM_COMMAND_PREFIX):
            changes["last_assigned_task"] = command
        self.store.update_agent(agent_id, **changes)

        await runner.run(
            RunnerRequest(
                agent_id=agent_id,
                prompt=command,
                working_dir=agent.cwd,
                session_id=agent.session_id,
                model=agent.model,
                permission_mode=agent.permission_mode,
                system_prompt=system_prompt,
                force_new_session=force_new_session,
                use_chrome=agent.use_chrome,
                codex=agent.codex,
            )
        )

    async def send_message(
        self,
        agent_id: str,
        command: str,
        system_prompt: str | None = None,
        force_new_session: bool = False,
    ) -> None:
        """Deliver to the live process when possible, otherwise start a new turn."""
        agent = self._agent(agent_id)
        runner = self._runner(agent.provider)
        if runner.is_running(agent_id) and not force_new_session:
            if runner.send_message(agent_id, command):
                changes: dict[str, Any] = {
                    "status": "working",
                    "current_task": command[:CURRENT_TASK_MAX_CHARS],
                }
                if not command.startswith(SYSTEM_COMMAND_PREFIX):
                    changes["last_assigned_task"] = command
                self.store.update_agent(agent_id, **changes)
                self._arm_stdin_watchdog(agent_id, runner, command, system_prompt)
                return
            logger.info("Agent %s did not accept stdin; starting a new turn", agent_id)
        await self.execute_command(agent_id, command, system_prompt, force_new_session)

    def interrupt(self, agent_id: str) -> bool:
        agent = self._agent(agent_id)
        return self._runner(agent.provider).interrupt(agent_id)

    async def stop(self, agent_id: str) -> None:
        agent = self._agent(agent_id)
        self._clear_stdin_watchdog(agent_id)
        await self._runner(agent.provider).stop(agent_id)
        self.store.update_agent(
            agent_id, status="idle", current_task=None, current_tool=None, is_detached=False
        )

    async def close(self) -> None:
        for agent_id in list(self._stdin_watchdogs):
            self._clear_stdin_watchdog(agent_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # -- stdin watchdog ------------------------------------------------------

    def _arm_stdin_watchdog(
        self, agent_id: str, runner: ProcessRunner, command: str, system_prompt: str | None
    ) -> None:
        """Respawn with resume if a stdin turn produces no output in time.

        The next parsed event from the process disarms the timer.
        """
        self._clear_stdin_watchdog(agent_id)
        loop = asyncio.get_running_loop()
        self._stdin_watchdogs[agent_id] = loop.call_later(
            self._stdin_timeout,
            self._stdin_watchdog_fired,
            agent_id,
            runner,
            command,
            system_prompt,
        )
        runner.on_next_activity(agent_id, lambda: self._clear_stdin_watchdog(agent_id))

    def _clear_stdin_watchdog(self, agent_id: str) -> None:
        timer = self._stdin_watchdogs.pop(agent_id, None)
        if timer is not None:
            timer.cancel()

    def _stdin_watchdog_fired(
        self, agent_id: str, runner: ProcessRunner, command: str, system_prompt: str | None
    ) -> None:
        self._stdin_watchdogs.pop(agent_id, None)
        if runner.has_recent_activity(agent_id, self._stdin_timeout):
            return
        logger.warning("Agent %s: no activity after stdin message, respawning process", agent_id)
        self._spawn(self._respawn_silent(agent_id, runner, command, system_prompt))

    async def _respawn_silent(
        self, agent_id: str, runner: ProcessRunner, command: str, system_prompt: str | None
    ) -> None:
        await runner.stop(agent_id)
        await self.execute_command(agent_id, command, system_prompt)
        logger.info("Agent %s: respawned after silent stdin turn", agent_id)

    # -- runner callbacks ----------------------------------------------------

    def handle_event(self, agent_id: str, event: StandardEvent) -> None:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            return

        if event.type == "init":
            self.store.update_agent(agent_id, status="working")
        elif event.type == "tool_start":
            self.store.update_agent(agent_id, status="working", current_tool=event.tool_name)
        elif event.type == "tool_result":
            self.store.update_agent(agent_id, current_tool=None)
        elif event.type == "step_complete":
            self._record_step(agent, event)
        elif event.type == "error":
            self.store.update_agent(agent_id, status="error")
        elif event.type == "context_stats" and event.context_stats_raw:
            stats = parse_context_output(event.context_stats_raw)
            if stats is not None:
                self.store.update_agent(
                    agent_id,
                    context_stats=stats,
                    context_used=stats.total_tokens,
                    context_limit=stats.context_window,
                )
        elif event.type == "usage_stats" and event.usage_stats_raw:
            usage = parse_usage_output(event.usage_stats_raw)
            if usage is None:
                logger.warning("Agent %s: could not parse /usage output", agent_id)
            else:
                self.store.update_agent(agent_id, usage_stats=usage)

        self._narrate(agent_id, event)
        self._notify("event", agent_id, {"event": event})

    def _record_step(self, agent: AgentRecord, event: StandardEvent) -> None:
        reading = self.accountant.record_step(
            agent.id,
            event,
            provider=agent.provider,
            previous_used=agent.context_used,
            previous_limit=agent.context_limit or None,
            last_prompt=agent.last_assigned_task,
            model=agent.model,
        )
        changes: dict[str, Any] = {
            "tokens_used": agent.tokens_used + reading.tokens_delta,
            "context_used": reading.context_used,
            "context_limit": reading.context_limit,
        }
        if reading.stats is not None:
            changes["context_stats"] = reading.stats
        self.store.update_agent(agent.id, **changes)

        if agent.provider == "codex":
            # Codex goes idle when the process exits
            return
        self._later(self._idle_delay, self._mark_idle, agent.id)

    def _mark_idle(self, agent_id: str) -> None:
        agent = self.store.get_agent(agent_id)
        # An error reported after the turn result wins
        if agent is None or agent.status != "working":
            return
        self.store.update_agent(agent_id, status="idle", current_task=None, current_tool=None)

    def handle_output(
        self,
        agent_id: str,
        text: str,
        is_streaming: bool = False,
        subagent_name: str | None = None,
        uuid: str | None = None,
        tool_meta: dict[str, Any] | None = None,
    ) -> None:
        self._notify(
            "output",
            agent_id,
            {
                "text": text,
                "is_streaming": is_streaming,
                "subagent_name": subagent_name,
                "uuid": uuid,
                "tool_meta": tool_meta,
            },
        )

    def handle_session_id(self, agent_id: str, session_id: str) -> None:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            return
        if not agent.session_id:
            self.store.update_agent(agent_id, session_id=session_id)
            self._notify("session_id", agent_id, {"session_id": session_id})
        elif agent.session_id != session_id:
            logger.warning(
                "Session mismatch for %s: expected %s, got %s",
                agent_id,
                agent.session_id,
                session_id,
            )

    def handle_complete(self, agent_id: str, success: bool) -> None:
        self.store.update_agent(
            agent_id, status="idle", current_task=None, current_tool=None, is_detached=False
        )
        self._notify("complete", agent_id, {"success": success})

    def handle_error(self, agent_id: str, error: str) -> None:
        agent = self.store.get_agent(agent_id)
        if agent is not None and self._try_codex_recovery(agent, error):
            return

        logger.error(
            "Agent %s (%s) error: %s [status=%s, task=%r, tool=%s, session=%s]",
            agent.name if agent else agent_id,
            agent_id,
            error,
            agent.status if agent else None,
            agent.last_assigned_task if agent else None,
            agent.current_tool if agent else None,
            agent.session_id if agent else None,
        )
        self.store.update_agent(agent_id, status="error", current_task=None, current_tool=None)
        self._notify("error", agent_id, {"error": error})

    # -- codex recovery ------------------------------------------------------

    def _try_codex_recovery(self, agent: AgentRecord, error: str) -> bool:
        marker = detect_recoverable_resume_error(error)
        task = (agent.last_assigned_task or "").strip()
        if agent.provider != "codex" or not marker or not agent.session_id or not task:
            return False

        signature = f"{marker}:{agent.session_id}"
        previous = self._recovery_state.get(agent.id)
        attempts = previous[1] if previous and previous[0] == signature else 0
        if attempts >= 1:
            return False
        self._recovery_state[agent.id] = (signature, attempts + 1)

        stale_session_id = agent.session_id
        logger.warning(
            "Recoverable Codex resume error for %s (%s); retrying once with a fresh session",
            agent.name,
            agent.id,
        )
        self.store.update_agent(
            agent.id, session_id=None, status="idle", current_task=None, current_tool=None
        )
        self.handle_output(agent.id, STALE_SESSION_NOTICE, False, None, "system-codex-retry")
        self._spawn(self._recover_codex(agent.id, agent.cwd, stale_session_id, task))
        return True

    async def _recover_codex(self, agent_id: str, cwd: str, stale_session_id: str, task: str) -> None:
        await asyncio.sleep(self._recovery_delay)
        recovery_prompt = None
        try:
            history = await self.loader.load_session(
                cwd, stale_session_id, CODEX_RECOVERY_HISTORY_LIMIT, 0
            )
        except OSError as exc:
            logger.warning("Failed to load stale session %s for retry: %s", stale_session_id, exc)
            history = None
        if history is not None and history.messages:
            recovery_prompt = build_recovery_prompt(stale_session_id, history.messages)
            self.handle_output(
                agent_id,
                f"[System] Recovered {len(history.messages)} recent message(s) from the "
                "previous Codex session.",
                False,
                None,
                "system-codex-retry-context",
            )
        else:
            logger.warning(
                "No recoverable messages in stale session %s; retrying without history",
                stale_session_id,
            )

        try:
            await self.execute_command(agent_id, task, recovery_prompt, force_new_session=True)
        except Exception as exc:
            logger.exception("Codex recovery retry failed for %s", agent_id)
            self.store.update_agent(agent_id, status="error", current_task=None, current_tool=None)
            self._notify("error", agent_id, {"error": f"Codex auto-retry failed: {exc}"})

    # -- status reconciliation -----------------------------------------------

    async def sync_agent_status(self, agent_id: str, startup: bool = False) -> str | None:
        """Reconcile the status of an agent whose process this server does not track.

        Returns the agent's resulting status, or None for an unknown agent.
        """
        agent = self.store.get_agent(agent_id)
        if agent is None:
            return None
        runner = self.runners.get(agent.provider)
        if runner is not None and runner.is_running(agent_id):
            return agent.status

        recently_active = False
        orphaned_process = False
        if agent.session_id and agent.cwd:
            activity = await self.loader.get_session_activity_status(agent.cwd, agent.session_id)
            recently_active = bool(activity and activity.is_active)
            if agent.status == "idle":
                orphaned_process = await asyncio.to_thread(self._probe, agent.provider, agent.cwd)
                if orphaned_process:
                    logger.info(
                        "Agent %s: found orphaned %s process (recently active: %s)",
                        agent_id,
                        agent.provider,
                        recently_active,
                    )

        if agent.status == "working" and not recently_active and not orphaned_process:
            self.store.update_agent(
                agent_id, status="idle", current_task=None, current_tool=None, is_detached=False
            )
        elif agent.status == "idle" and orphaned_process and recently_active:
            self.store.update_agent(
                agent_id,
                status="working",
                current_task="Processing (detached)...",
                is_detached=True,
            )
        elif startup and agent.status == "idle" and recently_active:
            self.store.update_agent(agent_id, status="working", current_task="Processing...")
        return agent.status

    async def sync_all_agent_status(self, startup: bool = False) -> None:
        await asyncio.gather(
            *(self.sync_agent_status(agent.id, startup) for agent in self.store.all_agents())
        )

    # -- plumbing ------------------------------------------------------------

    def _narrate(self, agent_id: str, event: StandardEvent) -> None:
        if self.narrative is None:
            return
        try:
            result = self.narrative.generate(agent_id, event)
        except Exception:
            logger.exception("Narrative generation failed for %s", agent_id)
            return
        if asyncio.iscoroutine(result):
            self._spawn(result)

    def _notify(self, kind: str, agent_id: str, payload: dict[str, Any]) -> None:
        if self.listener is None:
            return
        try:
            self.listener(kind, agent_id, payload)
        except Exception:
            logger.exception("Event listener failed for %s %s", kind, agent_id)

    def _later(self, delay: float, callback: Callable[..., None], *args: Any) -> None:
        asyncio.get_running_loop().call_later(delay, callback, *args)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(self._guard(coro))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _guard(coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Background supervisor task failed")
