"""Supervises provider CLI processes, one per agent."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import time
from collections.abc import Callable, Coroutine
from dataclasses import replace
from typing import Any

from ..backends.base import BackendConfig, CLIBackend
from ..config import RunnerSettings
from ..core.events import RunnerCallbacks, StandardEvent
from ..core.types import ActiveProcess, ProcessDeathInfo, RunnerRequest, RunningProcessInfo
from ..errors import SpawnError
from .checkpoint import CheckpointStore, OrphanStatus
from .diagnostics import DeathLog
from .procinfo import get_process_memory_mb
from .process import Spawner, StopEscalation, spawn_subprocess
from .restart import RestartPolicy
from .stream import pump_lines, pump_text

logger = logging.getLogger(__name__)

INTENTIONAL_SIGNALS = frozenset({"SIGINT", "SIGTERM"})
STRIPPED_ENV_VARS = ("CLAUDECODE",)
RESTARTED_NOTICE = "[System] Process was automatically restarted after crash"


def split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split an asyncio return code into (exit code, signal name)."""
    if returncode is None:
        return None, None
    if returncode < 0:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, f"SIG{-returncode}"
    return returncode, None


class ProcessRunner:
    """Owns the live subprocess for each agent of one provider backend.

    Each agent has at most one :class:`ActiveProcess`. ``run`` stops any
    existing process before spawning, stdout lines are parsed by the backend
    and dispatched in order, and abnormal exits go through the restart policy.

    Usage::

        runner = ProcessRunner(ClaudeBackend(), RunnerCallbacks(on_event=...))
        orphans = await runner.start()
        await runner.run(RunnerRequest(agent_id="a1", prompt="hi", working_dir="/repo"))
        ...
        await runner.close()
    """

    def __init__(
        self,
        backend: CLIBackend,
        callbacks: RunnerCallbacks | None = None,
        settings: RunnerSettings | None = None,
        *,
        spawner: Spawner | None = None,
        checkpoint: CheckpointStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.callbacks = callbacks or RunnerCallbacks()
        self.settings = settings or RunnerSettings()
        self._spawn = spawner or spawn_subprocess
        self._checkpoint = checkpoint or CheckpointStore(
            self.settings.checkpoint_file(backend.name)
        )
        self._clock = clock
        self._processes: dict[str, ActiveProcess] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._deaths = DeathLog(self.settings.death_history_size)
        self._policy = RestartPolicy(
            max_attempts=self.settings.max_restart_attempts,
            cooldown=self.settings.restart_cooldown,
            min_runtime=self.settings.min_runtime_for_restart,
            enabled=self.settings.auto_restart,
        )
        self._background: set[asyncio.Task[Any]] = set()
        self._pending_restarts: dict[str, asyncio.Task[Any]] = {}
        self._timers: list[asyncio.Task[None]] = []

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> list[OrphanStatus]:
        """Recover the previous checkpoint and start the background timers."""
        orphans = self._checkpoint.recover()
        if not self._timers:
            self._timers = [
                asyncio.create_task(self._watchdog_loop()),
                asyncio.create_task(self._checkpoint_loop()),
            ]
        return orphans

    async def close(self) -> None:
        """Stop every process, cancel timers and delete the checkpoint."""
        self._policy.enabled = False
        for timer in self._timers:
            timer.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []
        await self.stop_all()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._checkpoint.clear()

    # -- control surface -----------------------------------------------------

    async def run(self, request: RunnerRequest) -> None:
        """Stop any process for the agent, then spawn one for ``request``.

        Returns once the new process is registered; does not wait for it to exit.
        """
        async with self._lock(request.agent_id):
            await self._start(request)

    def send_message(self, agent_id: str, text: str) -> bool:
        """Write another user turn to a running process."""
        active = self._processes.get(agent_id)
        if active is None or not self.backend.requires_stdin_input():
            return False
        return self._write(active, self.backend.format_stdin_input(text))

    def interrupt(self, agent_id: str) -> bool:
        """Interrupt the current turn; the process stays alive."""
        active = self._processes.get(agent_id)
        if active is None:
            return False
        return active.handle.send_signal(signal.SIGINT, group=False)

    async def stop(self, agent_id: str) -> None:
        """Forget the agent's process and escalate signals until it exits.

        A restart still waiting on its delay is cancelled.
        """
        pending = self._pending_restarts.pop(agent_id, None)
        if pending is not None:
            pending.cancel()
            logger.info("Cancelled pending restart of agent %s", agent_id)
        active = self._processes.pop(agent_id, None)
        if active is None:
            return
        active.stopping = True
        escalation = StopEscalation(
            active.handle,
            terminate_after=self.settings.stop_terminate_after,
            kill_after=self.settings.stop_kill_after,
        )
        escalation.advance()
        logger.info("Stopping agent %s (pid %s)", agent_id, active.pid)
        self._emit(self.callbacks.on_complete, agent_id, False)
        self._spawn_task(escalation.run())

    async def stop_all(self) -> None:
        for agent_id in list(self._processes.keys() | self._pending_restarts.keys()):
            await self.stop(agent_id)

    def is_running(self, agent_id: str) -> bool:
        active = self._processes.get(agent_id)
        return active is not None and active.handle.is_alive()

    def get_session_id(self, agent_id: str) -> str | None:
        active = self._processes.get(agent_id)
        return active.session_id if active else None

    def has_recent_activity(self, agent_id: str, within: float) -> bool:
        active = self._processes.get(agent_id)
        if active is None:
            return False
        return self._clock() - active.last_activity_time <= within

    def on_next_activity(self, agent_id: str, callback: Callable[[], None]) -> None:
        """Call ``callback`` once, on the agent's next parsed event."""
        active = self._processes.get(agent_id)
        if active is not None:
            active.activity_callbacks.append(callback)

    def get_process_memory_mb(self, agent_id: str) -> int | None:
        active = self._processes.get(agent_id)
        return get_process_memory_mb(active.pid) if active else None

    def get_all_process_memory(self) -> dict[str, int]:
        usage = {}
        for agent_id, active in list(self._processes.items()):
            mb = get_process_memory_mb(active.pid)
            if mb is not None:
                usage[agent_id] = mb
        return usage

    def set_auto_restart(self, enabled: bool) -> None:
        self._policy.enabled = enabled

    def get_death_history(self, agent_id: str | None = None) -> list[ProcessDeathInfo]:
        return self._deaths.history(agent_id)

    @property
    def active_agents(self) -> list[str]:
        return list(self._processes)

    # -- spawning ------------------------------------------------------------

    def _lock(self, agent_id: str) -> asyncio.Lock:
        return self._locks.setdefault(agent_id, asyncio.Lock())

    def _build_env(self) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in STRIPPED_ENV_VARS}
        env["LANG"] = "en_US.UTF-8"
        env["LC_ALL"] = "en_US.UTF-8"
        env["TIDE_SERVER"] = self.settings.server_url
        return env

    async def _start(
        self,
        request: RunnerRequest,
        *,
        restart_count: int = 0,
        last_restart_time: float = 0.0,
    ) -> ActiveProcess | None:
        agent_id = request.agent_id
        await self.stop(agent_id)

        config = BackendConfig.from_request(request)
        executable = self.backend.get_executable_path()
        try:
            args = self.backend.build_args(config)
            handle = await self._spawn(executable, args, request.working_dir, self._build_env())
        except (SpawnError, OSError) as exc:
            logger.error("Failed to spawn %s for agent %s: %s", executable, agent_id, exc)
            self._emit(self.callbacks.on_error, agent_id, f"Failed to start {self.backend.name}: {exc}")
            return None

        now = self._clock()
        active = ActiveProcess(
            agent_id=agent_id,
            handle=handle,
            last_request=request,
            session_id=config.session_id,
            start_time=now,
            last_activity_time=now,
            restart_count=restart_count,
            last_restart_time=last_restart_time,
        )
        self._processes[agent_id] = active
        active.task = self._spawn_task(self._supervise(active))
        logger.info(
            "Started %s for agent %s (pid %s, resume=%s)",
            self.backend.name,
            agent_id,
            handle.pid,
            config.session_id,
        )

        if self.backend.requires_stdin_input():
            self._write(active, self.backend.format_stdin_input(request.prompt))
        return active

    @staticmethod
    def _write(active: ActiveProcess, text: str) -> bool:
        return active.handle.write_stdin((text + "\n").encode("utf-8", errors="replace"))

    def _spawn_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- streaming -----------------------------------------------------------

    async def _supervise(self, active: ActiveProcess) -> None:
        handle = active.handle
        stdout_task = asyncio.create_task(
            pump_lines(handle.stdout, lambda line: self._process_line(active, line))
        )
        stderr_task = asyncio.create_task(
            pump_text(handle.stderr, lambda text: self._process_stderr(active, text))
        )
        try:
            returncode = await handle.wait()
            # Exit is reported only after the last stdout line was dispatched.
            results = await asyncio.gather(stdout_task, stderr_task, return_exceptions=True)
        except asyncio.CancelledError:
            stdout_task.cancel()
            stderr_task.cancel()
            raise
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Output stream for agent %s failed: %s", active.agent_id, result)
        self._handle_exit(active, returncode)

    def _process_line(self, active: ActiveProcess, line: str) -> None:
        if not line.strip() or active.stopping:
            return
        agent_id = active.agent_id
        try:
            raw = json.loads(line)
        except json.JSONDecodeError:
            raw = None
        if not isinstance(raw, dict):
            self._emit(self.callbacks.on_output, agent_id, f"[raw] {line}", False, None, None, None)
            return

        session_id = self.backend.extract_session_id(raw)
        if session_id:
            self._update_session_id(active, session_id)
        for event in self.backend.parse_event(raw):
            self._handle_event(active, event)

    def _update_session_id(self, active: ActiveProcess, session_id: str) -> None:
        if active.session_id and active.session_id != session_id:
            logger.warning(
                "Agent %s process reported session %s while resuming %s",
                active.agent_id,
                session_id,
                active.session_id,
            )
        active.session_id = session_id
        if not active.last_request.session_id:
            active.last_request = replace(active.last_request, session_id=session_id)
        self._emit(self.callbacks.on_session_id, active.agent_id, session_id)

    def _handle_event(self, active: ActiveProcess, event: StandardEvent) -> None:
        agent_id = active.agent_id
        active.last_activity_time = self._clock()
        callbacks, active.activity_callbacks = active.activity_callbacks, []
        for callback in callbacks:
            self._emit(callback)

        self._emit(self.callbacks.on_event, agent_id, event)
        for text, streaming, uuid, tool_meta in self._render(event):
            self._emit(
                self.callbacks.on_output,
                agent_id,
                text,
                streaming,
                event.subagent_name,
                uuid,
                tool_meta,
            )
        if event.type == "error":
            self._emit(self.callbacks.on_error, agent_id, event.error_message or "Unknown error")

    @staticmethod
    def _render(
        event: StandardEvent,
    ) -> list[tuple[str, bool, str | None, dict[str, Any] | None]]:
        """Human-readable lines for an event: (text, is_streaming, uuid, tool_meta)."""
        if event.type == "init":
            return [(f"Session started: {event.session_id} ({event.model})", False, None, None)]
        if event.type == "text" and event.text:
            return [(event.text, event.is_streaming, event.uuid, None)]
        if event.type == "thinking" and event.text:
            return [(f"[thinking] {event.text}", event.is_streaming, event.uuid, None)]
        if event.type == "tool_start":
            meta = {"tool_name": event.tool_name, "tool_input": event.tool_input}
            lines = [(f"Using tool: {event.tool_name}", False, event.uuid, meta)]
            if event.tool_input:
                lines.append((f"Tool input: {json.dumps(event.tool_input)}", False, None, meta))
            return lines
        if event.type == "tool_result" and event.tool_name == "Bash" and event.tool_output:
            return [(f"Bash output:\n{event.tool_output}", False, None, None)]
        if event.type == "step_complete":
            lines = []
            if event.result_text:
                lines.append((event.result_text, False, None, None))
            if event.tokens:
                tokens = event.tokens
                lines.append(
                    (f"Tokens: {tokens.input_tokens} in, {tokens.output_tokens} out", False, None, None)
                )
            if event.cost is not None:
                lines.append((f"Cost: ${event.cost:.4f}", False, None, None))
            return lines
        if event.type == "context_stats" and event.context_stats_raw:
            return [(event.context_stats_raw, False, None, None)]
        return []

    def _process_stderr(self, active: ActiveProcess, text: str) -> None:
        limit = self.settings.stderr_tail_chars
        active.stderr_tail = (active.stderr_tail + text)[-limit:]
        logger.debug("Agent %s stderr: %s", active.agent_id, text.rstrip())
        if "error" in text.lower() and not active.stopping:
            self._emit(self.callbacks.on_error, active.agent_id, text.strip())

    # -- exits and restarts --------------------------------------------------

    def _handle_exit(self, active: ActiveProcess, returncode: int | None) -> None:
        if active.exit_handled:
            return
        active.exit_handled = True
        agent_id = active.agent_id
        tracked = self._processes.get(agent_id) is active
        if tracked:
            del self._processes[agent_id]

        now = self._clock()
        exit_code, signal_name = split_returncode(returncode)
        death = ProcessDeathInfo(
            agent_id=agent_id,
            pid=active.pid,
            exit_code=exit_code,
            signal=signal_name,
            runtime=max(0.0, now - active.start_time),
            was_tracked=tracked,
            stderr=active.stderr_tail,
            timestamp=now,
            intentional=active.stopping or signal_name in INTENTIONAL_SIGNALS,
        )
        self._deaths.record(death)
        if active.stopping:
            # stop() already reported completion
            return

        self._emit(self.callbacks.on_complete, agent_id, exit_code == 0)
        if death.abnormal:
            self._maybe_restart(active, death)

    def _maybe_restart(self, active: ActiveProcess, death: ProcessDeathInfo) -> None:
        decision = self._policy.decide(death, active, self._clock())
        if decision.error:
            logger.error("Agent %s: %s", active.agent_id, decision.error)
            self._emit(self.callbacks.on_error, active.agent_id, decision.error)
        if not decision.restart:
            return

        request = active.last_request
        if active.session_id:
            request = replace(request, session_id=active.session_id, force_new_session=False)
        logger.warning(
            "Auto-restarting agent %s (attempt %d/%d, resume=%s)",
            active.agent_id,
            decision.attempt,
            self._policy.max_attempts,
            request.session_id,
        )
        self._pending_restarts[active.agent_id] = self._spawn_task(
            self._restart(request, decision.attempt)
        )

    async def _restart(self, request: RunnerRequest, attempt: int) -> None:
        await asyncio.sleep(self.settings.restart_delay)
        agent_id = request.agent_id
        if self._pending_restarts.get(agent_id) is not asyncio.current_task():
            return
        del self._pending_restarts[agent_id]
        async with self._lock(agent_id):
            if not self._policy.enabled or agent_id in self._processes:
                # Disabled meanwhile, or the caller already started a new run
                return
            active = await self._start(
                request, restart_count=attempt, last_restart_time=self._clock()
            )
        if active is not None:
            self._emit(self.callbacks.on_output, agent_id, RESTARTED_NOTICE, False, None, None, None)

    # -- background timers ---------------------------------------------------

    def check_processes(self) -> list[str]:
        """Reap tracked processes that died without an exit notification.

        Returns the affected agent ids.
        """
        reaped = []
        for agent_id, active in list(self._processes.items()):
            handle = active.handle
            if active.exit_handled or handle.returncode is not None or handle.is_alive():
                continue
            logger.warning(
                "Watchdog: agent %s process %s is gone without an exit notification",
                agent_id,
                active.pid,
            )
            if active.task is not None:
                active.task.cancel()
            self._handle_exit(active, None)
            reaped.append(agent_id)
        return reaped

    def persist_checkpoint(self) -> None:
        processes = [
            RunningProcessInfo(
                agent_id=agent_id,
                pid=active.pid,
                session_id=active.session_id,
                start_time=active.start_time,
                last_request=active.last_request,
            )
            for agent_id, active in list(self._processes.items())
            if active.pid is not None
        ]
        try:
            if processes:
                self._checkpoint.save(processes)
            else:
                self._checkpoint.clear()
        except OSError as exc:
            logger.warning("Failed to write checkpoint %s: %s", self._checkpoint.path, exc)

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.watchdog_interval)
            try:
                self.check_processes()
            except Exception:
                logger.exception("Watchdog tick failed")

    async def _checkpoint_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.checkpoint_interval)
            self.persist_checkpoint()

    @staticmethod
    def _emit(callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Runner callback %r failed", getattr(callback, "__name__", callback))
