"""Claude Code CLI adapter (stream-json protocol)."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from ..config import RunnerSettings
from ..core.events import ModelUsage, StandardEvent, TokenUsage
from ..core.text import sanitize_unicode
from .base import BackendConfig, CLIBackend, as_dict, as_float, as_int, as_list, as_str

logger = logging.getLogger(__name__)

HOOK_TIMEOUT_S = 300
SUBAGENT_TOOL = "Task"

_LOCAL_STDOUT_RE = re.compile(r"<local-command-stdout>([\s\S]*?)</local-command-stdout>")


def _tokens(usage: dict[str, Any]) -> TokenUsage:
    return TokenUsage(
        input_tokens=as_int(usage.get("input_tokens")) or 0,
        output_tokens=as_int(usage.get("output_tokens")) or 0,
        cache_creation_input_tokens=as_int(usage.get("cache_creation_input_tokens")) or 0,
        cache_read_input_tokens=as_int(usage.get("cache_read_input_tokens")) or 0,
    )


def _model_usage(raw: Any) -> ModelUsage | None:
    """Return the first per-model entry that reports a context window."""
    for entry in as_dict(raw).values():
        entry = as_dict(entry)
        window = as_int(entry.get("contextWindow"))
        if window:
            return ModelUsage(
                context_window=window,
                max_output_tokens=as_int(entry.get("maxOutputTokens")),
                input_tokens=as_int(entry.get("inputTokens")) or 0,
                output_tokens=as_int(entry.get("outputTokens")) or 0,
                cache_read_input_tokens=as_int(entry.get("cacheReadInputTokens")) or 0,
                cache_creation_input_tokens=as_int(entry.get("cacheCreationInputTokens")) or 0,
            )
    return None


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for block in as_list(content):
        text = as_str(as_dict(block).get("text"))
        if text:
            parts.append(text)
    if parts:
        return "\n".join(parts)
    if content is None:
        return ""
    return json.dumps(content)


class ClaudeBackend(CLIBackend):
    """Builds ``claude --print`` command lines and parses its stream-json output."""

    name = "claude"
    executable_name = "claude"

    def __init__(self, settings: RunnerSettings | None = None) -> None:
        self._settings = settings or RunnerSettings()
        self._tool_names: dict[str, str] = {}

    def build_args(self, config: BackendConfig) -> list[str]:
        args = [
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
            "--input-format",
            "stream-json",
        ]
        if config.session_id:
            args += ["--resume", config.session_id]

        if config.permission_mode == "interactive":
            args += ["--settings", str(self._write_hook_settings())]
        else:
            args.append("--dangerously-skip-permissions")

        if config.model:
            args += ["--model", config.model]
        if config.use_chrome:
            args.append("--chrome")

        if config.system_prompt:
            prompt_file = self._write_prompt_file(config.agent_id, config.system_prompt)
            args += ["--append-system-prompt-file", str(prompt_file)]
        return args

    def _write_hook_settings(self) -> Path:
        path = self._settings.hook_settings_file
        path.parent.mkdir(parents=True, exist_ok=True)
        hook = {
            "hooks": {
                "PreToolUse": [
                    {
                        "matcher": "*",
                        "hooks": [
                            {
                                "type": "command",
                                "command": str(self._settings.hook_script),
                                "timeout": HOOK_TIMEOUT_S,
                            }
                        ],
                    }
                ]
            }
        }
        path.write_text(json.dumps(hook, indent=2), encoding="utf-8")
        return path

    def _write_prompt_file(self, agent_id: str, system_prompt: str) -> Path:
        prompts_dir = self._settings.prompts_dir
        prompts_dir.mkdir(parents=True, exist_ok=True)
        path = prompts_dir / f"prompt-{agent_id}.md"
        path.write_text(sanitize_unicode(system_prompt), encoding="utf-8")
        return path

    def requires_stdin_input(self) -> bool:
        return True

    def format_stdin_input(self, prompt: str) -> str:
        message = {
            "type": "user",
            "message": {"role": "user", "content": sanitize_unicode(prompt)},
        }
        return json.dumps(message, ensure_ascii=False)

    def extract_session_id(self, raw: Any) -> str | None:
        event = as_dict(raw)
        if event.get("type") == "system" and event.get("subtype") == "init":
            return as_str(event.get("session_id"))
        return None

    def parse_event(self, raw: Any) -> list[StandardEvent]:
        event = as_dict(raw)
        handler = {
            "system": self._parse_system,
            "assistant": self._parse_assistant,
            "user": self._parse_user,
            "tool_use": self._parse_tool_use,
            "result": self._parse_result,
            "stream_event": self._parse_stream_event,
        }.get(as_str(event.get("type")) or "")
        if handler is None:
            return []
        return handler(event)

    def _parse_system(self, event: dict[str, Any]) -> list[StandardEvent]:
        subtype = event.get("subtype")
        if subtype == "init":
            tools = [t for t in as_list(event.get("tools")) if isinstance(t, str)]
            return [
                StandardEvent(
                    type="init",
                    session_id=as_str(event.get("session_id")),
                    model=as_str(event.get("model")),
                    tools=tools,
                )
            ]
        if subtype == "error":
            message = as_str(event.get("error")) or as_str(event.get("message")) or "Unknown error"
            return [StandardEvent(type="error", error_message=message)]
        return []

    def _parse_assistant(self, event: dict[str, Any]) -> list[StandardEvent]:
        uuid = as_str(event.get("uuid"))
        events: list[StandardEvent] = []
        for index, block in enumerate(as_list(as_dict(event.get("message")).get("content"))):
            block = as_dict(block)
            block_type = block.get("type")
            if block_type == "text":
                text = as_str(block.get("text")) or ""
                if not text.strip():
                    continue
                events.append(
                    StandardEvent(
                        type="text",
                        text=text,
                        is_streaming=False,
                        uuid=f"{uuid}:{index}" if uuid else None,
                    )
                )
            elif block_type == "tool_use":
                events.append(self._tool_start(block))
        return events

    def _tool_start(self, block: dict[str, Any]) -> StandardEvent:
        tool_name = as_str(block.get("name")) or "unknown"
        tool_id = as_str(block.get("id"))
        tool_input = as_dict(block.get("input"))
        if tool_id:
            self._tool_names[tool_id] = tool_name
        event = StandardEvent(
            type="tool_start",
            tool_name=tool_name,
            tool_input=tool_input,
            tool_use_id=tool_id,
            uuid=tool_id,
        )
        if tool_name == SUBAGENT_TOOL:
            event.subagent_name = as_str(tool_input.get("name")) or as_str(
                tool_input.get("description")
            )
            event.subagent_description = as_str(tool_input.get("description"))
            event.subagent_type = as_str(tool_input.get("subagent_type"))
            event.subagent_model = as_str(tool_input.get("model"))
        return event

    def _parse_tool_use(self, event: dict[str, Any]) -> list[StandardEvent]:
        subtype = event.get("subtype")
        tool_name = as_str(event.get("tool_name")) or "unknown"
        if subtype == "input":
            return [
                StandardEvent(
                    type="tool_start",
                    tool_name=tool_name,
                    tool_input=as_dict(event.get("input")),
                )
            ]
        if subtype == "result":
            output = event.get("output")
            return [
                StandardEvent(
                    type="tool_result",
                    tool_name=tool_name,
                    tool_output=output if isinstance(output, str) else _content_text(output),
                )
            ]
        return []

    def _parse_user(self, event: dict[str, Any]) -> list[StandardEvent]:
        content = as_dict(event.get("message")).get("content")
        if isinstance(content, str):
            return self._parse_local_command(content)

        events: list[StandardEvent] = []
        for block in as_list(content):
            block = as_dict(block)
            if block.get("type") != "tool_result":
                continue
            tool_use_id = as_str(block.get("tool_use_id"))
            tool_name = "unknown"
            if tool_use_id:
                tool_name = self._tool_names.pop(tool_use_id, "unknown")
            events.append(
                StandardEvent(
                    type="tool_result",
                    tool_name=tool_name,
                    tool_output=self._tool_output(event, block),
                    tool_use_id=tool_use_id,
                )
            )
        return events

    @staticmethod
    def _tool_output(event: dict[str, Any], block: dict[str, Any]) -> str:
        result = event.get("tool_use_result")
        if isinstance(result, dict):
            stdout = as_str(result.get("stdout"))
            if stdout is not None:
                stderr = as_str(result.get("stderr"))
                return f"{stdout}\n[stderr] {stderr}" if stderr else stdout
        return _content_text(block.get("content"))

    @staticmethod
    def _parse_local_command(content: str) -> list[StandardEvent]:
        match = _LOCAL_STDOUT_RE.search(content)
        if not match:
            return []
        output = match.group(1)
        if "## Context Usage" in output or "**Model:**" in output:
            return [StandardEvent(type="context_stats", context_stats_raw=output)]
        if "## Usage" in output or "Current Session" in output:
            return [StandardEvent(type="usage_stats", usage_stats_raw=output)]
        return []

    def _parse_result(self, event: dict[str, Any]) -> list[StandardEvent]:
        cost = as_float(event.get("total_cost_usd"))
        if cost is None:
            cost = as_float(event.get("cost_usd"))
        denials = [as_dict(d) for d in as_list(event.get("permission_denials"))]
        step = StandardEvent(
            type="step_complete",
            duration_ms=as_int(event.get("duration_ms")),
            cost=cost,
            tokens=_tokens(as_dict(event.get("usage"))),
            model_usage=_model_usage(event.get("modelUsage")),
            result_text=as_str(event.get("result")),
            permission_denials=denials,
        )
        if event.get("is_error") and step.result_text:
            return [step, StandardEvent(type="error", error_message=step.result_text)]
        return [step]

    def _parse_stream_event(self, event: dict[str, Any]) -> list[StandardEvent]:
        inner = as_dict(event.get("event"))
        inner_type = inner.get("type")
        uuid = as_str(event.get("uuid"))
        if inner_type == "content_block_start":
            block_type = as_str(as_dict(inner.get("content_block")).get("type"))
            if block_type in ("text", "thinking"):
                return [StandardEvent(type="block_start", block_type=block_type, uuid=uuid)]
            return []
        if inner_type == "content_block_stop":
            return [StandardEvent(type="block_end", uuid=uuid)]
        if inner_type == "content_block_delta":
            delta = as_dict(inner.get("delta"))
            if delta.get("type") == "text_delta":
                text = as_str(delta.get("text"))
                if text:
                    return [StandardEvent(type="text", text=text, is_streaming=True, uuid=uuid)]
            elif delta.get("type") == "thinking_delta":
                text = as_str(delta.get("thinking"))
                if text:
                    return [StandardEvent(type="thinking", text=text, is_streaming=True, uuid=uuid)]
        return []
