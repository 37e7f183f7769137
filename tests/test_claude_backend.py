from __future__ import annotations

import json

import pytest

from tide_agent.backends import ClaudeBackend, CodexBackend, get_backend
from tide_agent.backends.base import BackendConfig
from tide_agent.core.types import RunnerRequest
from tide_agent.errors import BackendNotFoundError


@pytest.fixture
def backend(settings) -> ClaudeBackend:
    return ClaudeBackend(settings)


def _config(**overrides) -> BackendConfig:
    values = {"agent_id": "a1", "prompt": "hi", "working_dir": "/work"}
    values.update(overrides)
    return BackendConfig(**values)


def test_get_backend_by_name(settings) -> None:
    assert isinstance(get_backend("claude", settings), ClaudeBackend)
    assert isinstance(get_backend("codex"), CodexBackend)
    with pytest.raises(BackendNotFoundError):
        get_backend("gemini")


def test_build_args_bypass_mode(backend) -> None:
    args = backend.build_args(_config(session_id="s1", model="opus", use_chrome=True))

    assert args[:6] == [
        "--print",
        "--verbose",
        "--output-format",
        "stream-json",
        "--input-format",
        "stream-json",
    ]
    assert args[args.index("--resume") + 1] == "s1"
    assert "--dangerously-skip-permissions" in args
    assert args[args.index("--model") + 1] == "opus"
    assert "--chrome" in args


def test_build_args_interactive_writes_hook_settings(backend, settings) -> None:
    args = backend.build_args(_config(permission_mode="interactive"))

    assert "--dangerously-skip-permissions" not in args
    path = args[args.index("--settings") + 1]
    hook = json.loads(open(path, encoding="utf-8").read())
    pre_tool = hook["hooks"]["PreToolUse"][0]
    assert pre_tool["matcher"] == "*"
    assert pre_tool["hooks"][0]["command"] == str(settings.hook_script)
    assert pre_tool["hooks"][0]["timeout"] == 300


def test_build_args_writes_system_prompt_file(backend, settings) -> None:
    args = backend.build_args(_config(system_prompt="Be brief \ud83d"))

    path = settings.prompts_dir / "prompt-a1.md"
    assert args[args.index("--append-system-prompt-file") + 1] == str(path)
    assert path.read_text(encoding="utf-8") == "Be brief \ufffd"


def test_forced_new_session_drops_resume(backend) -> None:
    request = RunnerRequest(
        agent_id="a1", prompt="hi", working_dir="/work", session_id="s1", force_new_session=True
    )

    assert "--resume" not in backend.build_args(BackendConfig.from_request(request))


def test_stdin_message_format(backend) -> None:
    assert backend.requires_stdin_input()
    line = backend.format_stdin_input("héllo")

    assert json.loads(line) == {"type": "user", "message": {"role": "user", "content": "héllo"}}
    assert "héllo" in line


def test_init_event_and_session_id(backend) -> None:
    raw = {
        "type": "system",
        "subtype": "init",
        "session_id": "s1",
        "model": "claude-opus",
        "tools": ["Bash", "Read", 3],
    }

    (event,) = backend.parse_event(raw)

    assert event.type == "init"
    assert event.session_id == "s1"
    assert event.model == "claude-opus"
    assert event.tools == ["Bash", "Read"]
    assert backend.extract_session_id(raw) == "s1"
    assert backend.extract_session_id({"type": "assistant"}) is None


def test_assistant_blocks_get_stable_uuids(backend) -> None:
    raw = {
        "type": "assistant",
        "uuid": "u1",
        "message": {
            "content": [
                {"type": "text", "text": "Looking"},
                {"type": "text", "text": "   "},
                {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
            ]
        },
    }

    text, tool = backend.parse_event(raw)

    assert (text.type, text.text, text.uuid, text.is_streaming) == ("text", "Looking", "u1:0", False)
    assert tool.type == "tool_start"
    assert tool.tool_name == "Bash"
    assert tool.tool_input == {"command": "ls"}
    assert tool.uuid == "t1"


def test_tool_result_is_correlated_with_its_tool(backend) -> None:
    backend.parse_event(
        {
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Read", "input": {}}]},
        }
    )
    result = {
        "type": "user",
        "message": {
            "content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": [{"type": "text", "text": "body"}]}
            ]
        },
    }

    (event,) = backend.parse_event(result)
    (again,) = backend.parse_event(result)

    assert (event.tool_name, event.tool_output, event.tool_use_id) == ("Read", "body", "t1")
    assert again.tool_name == "unknown"


def test_tool_result_prefers_structured_stdout(backend) -> None:
    raw = {
        "type": "user",
        "tool_use_result": {"stdout": "out", "stderr": "warn"},
        "message": {"content": [{"type": "tool_result", "tool_use_id": "t9", "content": "ignored"}]},
    }

    (event,) = backend.parse_event(raw)

    assert event.tool_output == "out\n[stderr] warn"


def test_subagent_metadata_on_task_tool(backend) -> None:
    raw = {
        "type": "assistant",
        "message": {
            "content": [
                {
                    "type": "tool_use",
                    "id": "t2",
                    "name": "Task",
                    "input": {
                        "description": "Review the diff",
                        "subagent_type": "reviewer",
                        "model": "haiku",
                    },
                }
            ]
        },
    }

    (event,) = backend.parse_event(raw)

    assert event.subagent_name == "Review the diff"
    assert event.subagent_type == "reviewer"
    assert event.subagent_model == "haiku"


def test_result_event_with_usage_and_model_usage(backend) -> None:
    raw = {
        "type": "result",
        "duration_ms": 1500,
        "total_cost_usd": 0.25,
        "result": "done",
        "usage": {
            "input_tokens": 10,
            "output_tokens": 20,
            "cache_read_input_tokens": 1000,
            "cache_creation_input_tokens": 5,
        },
        "modelUsage": {
            "claude-opus": {"contextWindow": 200000, "inputTokens": 10, "outputTokens": 20}
        },
    }

    (event,) = backend.parse_event(raw)

    assert event.type == "step_complete"
    assert event.duration_ms == 1500
    assert event.cost == 0.25
    assert event.result_text == "done"
    assert event.tokens.context_total() == 1035
    assert event.model_usage.context_window == 200000


def test_error_result_emits_step_then_error(backend) -> None:
    events = backend.parse_event({"type": "result", "is_error": True, "result": "quota exceeded"})

    assert [e.type for e in events] == ["step_complete", "error"]
    assert events[1].error_message == "quota exceeded"


def test_streaming_deltas(backend) -> None:
    def stream(inner):
        return backend.parse_event({"type": "stream_event", "uuid": "m7", "event": inner})

    (start,) = stream({"type": "content_block_start", "content_block": {"type": "thinking"}})
    (thinking,) = stream(
        {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "hmm"}}
    )
    (text,) = stream({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}})
    (end,) = stream({"type": "content_block_stop"})

    assert start.block_type == "thinking"
    assert (thinking.type, thinking.is_streaming) == ("thinking", True)
    assert (text.text, text.is_streaming) == ("Hi", True)
    assert end.type == "block_end"
    assert [e.uuid for e in (start, thinking, text, end)] == ["m7"] * 4
    assert stream({"type": "content_block_start", "content_block": {"type": "tool_use"}}) == []


def test_local_command_output_becomes_stats_events(backend) -> None:
    def user(content):
        return backend.parse_event({"type": "user", "message": {"content": content}})

    (context,) = user("<local-command-stdout>## Context Usage\n**Model:** opus</local-command-stdout>")
    (usage,) = user("<local-command-stdout>## Usage\nCurrent Session</local-command-stdout>")

    assert context.type == "context_stats"
    assert context.context_stats_raw.startswith("## Context Usage")
    assert usage.type == "usage_stats"
    assert user("plain text") == []


def test_unknown_records_are_ignored(backend) -> None:
    assert backend.parse_event({"type": "mystery"}) == []
    assert backend.parse_event("not a dict") == []
    assert backend.parse_event({"type": "system", "subtype": "error", "error": "boom"})[0].error_message == "boom"
