from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import pytest

from fakes import FakeClock, FakeSpawner, wait_until
from tide_agent.backends import ClaudeBackend, CodexBackend
from tide_agent.config import RunnerSettings
from tide_agent.errors import AgentNotFoundError, BackendNotFoundError
from tide_agent.runner import ProcessRunner
from tide_agent.sessions import SessionLoader
from tide_agent.sessions.models import SessionMessage
from tide_agent.supervisor import (
    STALE_SESSION_NOTICE,
    AgentRecord,
    AgentSupervisor,
    InMemoryAgentStore,
    build_recovery_prompt,
    detect_recoverable_resume_error,
)

CWD = "/work/app"
INIT = {"type": "system", "subtype": "init", "session_id": "s1", "model": "sonnet", "tools": []}
TOOL_USE = {
    "type": "assistant",
    "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}]},
}
TOOL_RESULT = {
    "type": "user",
    "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "a.py"}]},
}
RESULT = {"type": "result", "result": "done", "usage": {"input_tokens": 10, "output_tokens": 5}}


class Listener:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def __call__(self, kind: str, agent_id: str, payload: dict[str, Any]) -> None:
        self.calls.append((kind, agent_id, payload))

    def of(self, kind: str) -> list[dict[str, Any]]:
        return [payload for k, _, payload in self.calls if k == kind]

    def texts(self) -> list[str]:
        return [payload["text"] for payload in self.of("output")]


class Narrative:
    def __init__(self) -> None:
        self.events: list[str] = []

    def generate(self, agent_id: str, event) -> None:
        self.events.append(event.type)


def _loader(settings: RunnerSettings) -> SessionLoader:
    return SessionLoader(
        settings.claude_home, settings.codex_home, stable_interval=0.001, stable_timeout=0.01
    )


def _supervisor(
    settings: RunnerSettings,
    spawner: FakeSpawner,
    *agents: AgentRecord,
    listener: Listener | None = None,
    clock: FakeClock | None = None,
    **kwargs: Any,
) -> AgentSupervisor:
    clock = clock or FakeClock()
    runners = {
        "claude": ProcessRunner(
            ClaudeBackend(settings), settings=settings, spawner=spawner, clock=clock
        ),
        "codex": ProcessRunner(CodexBackend(), settings=settings, spawner=spawner, clock=clock),
    }
    kwargs.setdefault("idle_delay", 0.0)
    kwargs.setdefault("recovery_delay", 0.0)
    return AgentSupervisor(
        InMemoryAgentStore(list(agents)), runners, _loader(settings), listener=listener, **kwargs
    )


async def _close(supervisor: AgentSupervisor) -> None:
    for runner in supervisor.runners.values():
        await runner.close()
    await supervisor.close()


def _agent(**overrides: Any) -> AgentRecord:
    values: dict[str, Any] = {"id": "a1", "name": "builder", "cwd": CWD}
    values.update(overrides)
    return AgentRecord(**values)


def _write_jsonl(path: Path, records: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8")


@pytest.mark.asyncio
async def test_claude_turn_status_transitions(settings, spawner) -> None:
    agent = _agent()
    listener = Listener()
    narrative = Narrative()
    supervisor = _supervisor(settings, spawner, agent, listener=listener, narrative=narrative)

    await supervisor.execute_command("a1", "build the feature " + "x" * 200)
    handle = spawner.handles[0]
    assert agent.status == "working"
    assert len(agent.current_task) == 100
    assert agent.last_assigned_task.startswith("build the feature")

    handle.emit(INIT, TOOL_USE)
    await wait_until(lambda: agent.current_tool == "Bash")
    assert agent.session_id == "s1"
    assert listener.of("session_id") == [{"session_id": "s1"}]

    handle.emit(TOOL_RESULT, RESULT)
    await wait_until(lambda: agent.status == "idle")

    assert agent.current_tool is None
    assert agent.current_task is None
    assert agent.tokens_used == 15
    assert agent.context_used == 15
    assert narrative.events == ["init", "tool_start", "tool_result", "step_complete"]
    assert "Using tool: Bash" in listener.texts()
    await _close(supervisor)


@pytest.mark.asyncio
async def test_system_commands_do_not_replace_the_assigned_task(settings, spawner) -> None:
    agent = _agent(last_assigned_task="real work")
    supervisor = _supervisor(settings, spawner, agent)

    await supervisor.execute_command("a1", "[System: summarize progress]")

    assert agent.last_assigned_task == "real work"
    assert agent.current_task == "[System: summarize progress]"
    await _close(supervisor)


@pytest.mark.asyncio
async def test_execute_command_resumes_the_agent_session(settings, spawner) -> None:
    agent = _agent(session_id="s0", model="opus")
    supervisor = _supervisor(settings, spawner, agent)

    await supervisor.execute_command("a1", "continue")
    await supervisor.execute_command("a1", "start over", force_new_session=True)

    first, second = spawner.calls
    assert first.args[first.args.index("--resume") + 1] == "s0"
    assert first.args[first.args.index("--model") + 1] == "opus"
    assert "--resume" not in second.args
    await _close(supervisor)


@pytest.mark.asyncio
async def test_mismatched_session_id_keeps_the_record(settings, spawner, caplog) -> None:
    agent = _agent(session_id="s0")
    listener = Listener()
    supervisor = _supervisor(settings, spawner, agent, listener=listener)

    await supervisor.execute_command("a1", "continue")
    spawner.handles[0].emit(INIT)
    await wait_until(lambda: agent.status == "working" and listener.of("event"))

    assert agent.session_id == "s0"
    assert listener.of("session_id") == []
    assert "Session mismatch for a1: expected s0, got s1" in caplog.text
    await _close(supervisor)


@pytest.mark.asyncio
async def test_send_message_uses_stdin_then_falls_back(settings, spawner) -> None:
    agent = _agent()
    supervisor = _supervisor(settings, spawner, agent)

    await supervisor.execute_command("a1", "first")
    await supervisor.send_message("a1", "second")
    assert len(spawner.handles) == 1
    assert [m["message"]["content"] for m in spawner.handles[0].stdin_messages()] == [
        "first",
        "second",
    ]
    assert agent.last_assigned_task == "second"

    await supervisor.stop("a1")
    assert agent.status == "idle"
    await supervisor.send_message("a1", "third")

    assert len(spawner.handles) == 2
    assert agent.status == "working"
    await _close(supervisor)


@pytest.mark.asyncio
async def test_silent_stdin_turn_respawns_with_resume(settings, spawner) -> None:
    agent = _agent(session_id="s0")
    clock = FakeClock()
    supervisor = _supervisor(settings, spawner, agent, clock=clock, stdin_timeout=0.05)
    await supervisor.execute_command("a1", "first")

    clock.now += 60
    await supervisor.send_message("a1", "second")
    await wait_until(lambda: len(spawner.handles) == 2)

    first, second = spawner.handles
    assert not first.is_alive()
    args = spawner.calls[1].args
    assert args[args.index("--resume") + 1] == "s0"
    assert second.stdin_messages()[0]["message"]["content"] == "second"
    assert agent.status == "working"
    await _close(supervisor)


@pytest.mark.asyncio
async def test_stdin_turn_with_output_keeps_the_process(settings, spawner) -> None:
    agent = _agent()
    clock = FakeClock()
    supervisor = _supervisor(settings, spawner, agent, clock=clock, stdin_timeout=0.05)
    await supervisor.execute_command("a1", "first")

    clock.now += 60
    await supervisor.send_message("a1", "second")
    spawner.handles[0].emit(TOOL_USE)
    await wait_until(lambda: agent.current_tool == "Bash")
    await asyncio.sleep(0.15)

    assert len(spawner.handles) == 1
    assert spawner.handles[0].is_alive()
    await _close(supervisor)


@pytest.mark.asyncio
async def test_stop_disarms_the_stdin_watchdog(settings, spawner) -> None:
    agent = _agent()
    clock = FakeClock()
    supervisor = _supervisor(settings, spawner, agent, clock=clock, stdin_timeout=0.05)
    await supervisor.execute_command("a1", "first")

    clock.now += 60
    await supervisor.send_message("a1", "second")
    await supervisor.stop("a1")
    await asyncio.sleep(0.15)

    assert len(spawner.handles) == 1
    assert agent.status == "idle"
    await _close(supervisor)


@pytest.mark.asyncio
async def test_stop_and_interrupt(settings, spawner) -> None:
    agent = _agent()
    listener = Listener()
    supervisor = _supervisor(settings, spawner, agent, listener=listener)

    assert not supervisor.interrupt("a1")
    await supervisor.execute_command("a1", "work")
    assert supervisor.interrupt("a1")
    await supervisor.stop("a1")

    assert agent.status == "idle"
    assert agent.current_task is None
    assert listener.of("complete") == [{"success": False}]
    await _close(supervisor)


@pytest.mark.asyncio
async def test_unknown_agent_and_provider(settings, spawner) -> None:
    supervisor = _supervisor(settings, spawner, _agent(id="g1", provider="gemini"))

    with pytest.raises(AgentNotFoundError):
        await supervisor.execute_command("nope", "hi")
    with pytest.raises(BackendNotFoundError):
        await supervisor.execute_command("g1", "hi")
    await _close(supervisor)


@pytest.mark.asyncio
async def test_error_result_marks_agent_errored(settings, spawner) -> None:
    agent = _agent()
    listener = Listener()
    supervisor = _supervisor(settings, spawner, agent, listener=listener)

    await supervisor.execute_command("a1", "work")
    spawner.handles[0].emit({"type": "result", "is_error": True, "result": "quota exceeded"})
    await wait_until(lambda: listener.of("error"))

    assert agent.status == "error"
    assert listener.of("error") == [{"error": "quota exceeded"}]
    await _close(supervisor)


@pytest.mark.asyncio
async def test_context_and_usage_command_output(settings, spawner) -> None:
    agent = _agent()
    supervisor = _supervisor(settings, spawner, agent)
    context = "## Context Usage\n**Model:** opus\n**Tokens:** 19.6k / 200.0k (10%)\n"
    usage = (
        "## Usage\n"
        "| Current Session | 12% | 3pm |\n"
        "| Current Week (All Models) | 40% | Mon |\n"
        "| Current Week (Sonnet Only) | 5% | Mon |\n"
    )

    await supervisor.execute_command("a1", "/context")
    spawner.handles[0].emit(
        {"type": "user", "message": {"content": f"<local-command-stdout>{context}</local-command-stdout>"}},
        {"type": "user", "message": {"content": f"<local-command-stdout>{usage}</local-command-stdout>"}},
    )
    await wait_until(lambda: agent.usage_stats is not None)

    assert agent.context_used == 19_600
    assert agent.context_stats.model == "opus"
    assert agent.usage_stats.weekly_all_models.percent_used == 40.0
    await _close(supervisor)


@pytest.mark.asyncio
async def test_codex_stays_working_until_exit(settings, spawner) -> None:
    agent = _agent(provider="codex")
    listener = Listener()
    supervisor = _supervisor(settings, spawner, agent, listener=listener)

    await supervisor.execute_command("a1", "fix it")
    handle = spawner.handles[0]
    handle.emit(
        {"type": "thread.started", "thread_id": "th1"},
        {"type": "turn.completed", "usage": {"input_tokens": 50_000_000, "output_tokens": 40}},
    )
    await wait_until(lambda: agent.tokens_used > 0)

    assert agent.status == "working"
    assert agent.session_id == "th1"
    assert agent.context_used == 42
    assert agent.context_stats.model == "codex"

    handle.exit(0)
    await wait_until(lambda: listener.of("complete"))
    assert agent.status == "idle"
    await _close(supervisor)


@pytest.mark.asyncio
async def test_codex_stale_resume_recovers_once(settings, spawner) -> None:
    _write_jsonl(
        settings.codex_home / "sessions" / "2025" / "03" / "04" / "rollout-x-th-old.jsonl",
        [
            {"type": "event_msg", "payload": {"type": "user_message", "message": "fix the bug"}},
            {
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": "Looking   at\nauth.py"}],
                },
            },
        ],
    )
    agent = _agent(provider="codex", session_id="th-old", last_assigned_task="fix the bug")
    listener = Listener()
    supervisor = _supervisor(settings, spawner, agent, listener=listener)

    supervisor.handle_error("a1", "ERROR: state db missing rollout path for thread th-old")

    assert agent.session_id is None
    assert listener.texts() == [STALE_SESSION_NOTICE]
    await wait_until(lambda: spawner.calls)
    await supervisor.close()

    (call,) = spawner.calls
    assert "resume" not in call.args
    prompt = call.args[-1]
    assert "Previous Codex session (th-old) could not be resumed" in prompt
    assert "User: fix the bug\nAssistant: Looking at auth.py" in prompt
    assert prompt.endswith("## User Request\n\nfix the bug")
    assert "[System] Recovered 2 recent message(s) from the previous Codex session." in listener.texts()
    assert agent.status == "working"
    assert listener.of("error") == []

    # Same failure for the same session is reported, not retried
    agent.session_id = "th-old"
    supervisor.handle_error("a1", "state db missing rollout path for thread th-old")
    assert agent.status == "error"
    assert len(listener.of("error")) == 1
    await _close(supervisor)


@pytest.mark.asyncio
async def test_codex_recovery_without_history(settings, spawner) -> None:
    agent = _agent(provider="codex", session_id="th-gone", last_assigned_task="fix the bug")
    supervisor = _supervisor(settings, spawner, agent)

    supervisor.handle_error("a1", "killing the current session")
    await wait_until(lambda: spawner.calls)
    await supervisor.close()

    assert spawner.calls[0].args[-1] == "fix the bug"
    await _close(supervisor)


@pytest.mark.asyncio
async def test_non_recoverable_errors(settings, spawner) -> None:
    claude = _agent(session_id="s1", last_assigned_task="work")
    codex = _agent(id="a2", provider="codex", session_id="th1")
    listener = Listener()
    supervisor = _supervisor(settings, spawner, claude, codex, listener=listener)

    supervisor.handle_error("a1", "state db missing rollout path for thread s1")
    supervisor.handle_error("a2", "state db missing rollout path for thread th1")

    assert (claude.status, codex.status) == ("error", "error")
    assert len(listener.of("error")) == 2
    assert spawner.calls == []
    await _close(supervisor)


@pytest.mark.asyncio
async def test_sync_status_marks_stale_working_agent_idle(settings, spawner) -> None:
    agent = _agent(status="working", current_task="old")
    supervisor = _supervisor(settings, spawner, agent, process_probe=lambda provider, cwd: False)

    assert await supervisor.sync_agent_status("a1") == "idle"
    assert agent.current_task is None
    assert await supervisor.sync_agent_status("missing") is None
    await _close(supervisor)


@pytest.mark.asyncio
async def test_sync_status_detects_detached_and_startup_work(settings, spawner) -> None:
    pending = [
        {
            "type": "assistant",
            "timestamp": "2025-01-02T10:00:00Z",
            "uuid": "u1",
            "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Bash", "input": {}}]},
        }
    ]
    _write_jsonl(settings.claude_home / "projects" / "-work-app" / "s1.jsonl", pending)
    detached = _agent(session_id="s1")
    restarted = _agent(id="a2", session_id="s1")
    probes: list[tuple[str, str]] = []

    def probe(provider: str, cwd: str) -> bool:
        probes.append((provider, cwd))
        return len(probes) == 1

    supervisor = _supervisor(settings, spawner, detached, restarted, process_probe=probe)

    assert await supervisor.sync_agent_status("a1") == "working"
    assert detached.is_detached
    assert detached.current_task == "Processing (detached)..."

    assert await supervisor.sync_agent_status("a2") == "idle"
    assert await supervisor.sync_agent_status("a2", startup=True) == "working"
    assert restarted.current_task == "Processing..."
    assert not restarted.is_detached
    assert probes[0] == ("claude", CWD)
    await _close(supervisor)


@pytest.mark.asyncio
async def test_sync_all_skips_agents_with_live_processes(settings, spawner) -> None:
    busy = _agent(id="a1")
    stale = _agent(id="a2", status="working")
    supervisor = _supervisor(settings, spawner, busy, stale, process_probe=lambda p, c: False)

    await supervisor.execute_command("a1", "work")
    await supervisor.sync_all_agent_status()

    assert busy.status == "working"
    assert stale.status == "idle"
    await _close(supervisor)


@pytest.mark.asyncio
async def test_listener_failures_are_logged(settings, spawner, caplog) -> None:
    def broken(kind: str, agent_id: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("listener down")

    agent = _agent()
    supervisor = _supervisor(settings, spawner, agent, listener=broken)

    with caplog.at_level(logging.ERROR):
        supervisor.handle_complete("a1", True)

    assert agent.status == "idle"
    assert "Event listener failed for complete a1" in caplog.text
    await _close(supervisor)


def test_in_memory_store_rejects_unknown_fields() -> None:
    store = InMemoryAgentStore([_agent()])

    assert store.update_agent("a1", status="working").status == "working"
    assert store.update_agent("missing", status="working") is None
    with pytest.raises(TypeError):
        store.update_agent("a1", colour="blue")


def test_detect_recoverable_resume_error() -> None:
    assert detect_recoverable_resume_error("State DB missing rollout path for thread x") == (
        "state db missing rollout path for thread"
    )
    assert detect_recoverable_resume_error("rate limited") is None
    assert detect_recoverable_resume_error("") is None


def test_build_recovery_prompt_truncates_and_labels() -> None:
    messages = [SessionMessage("user", f"message {i}") for i in range(14)]
    messages.append(SessionMessage("tool_use", "y" * 500, tool_name="Bash"))

    prompt = build_recovery_prompt("th1", messages)

    assert "User: message 2\n" not in prompt
    assert "User: message 3\n" in prompt
    assert f"ToolUse(Bash): {'y' * 400}..." in prompt
    assert prompt.endswith("ask a focused clarifying question.")
