"""Codex rollout records (``~/.codex/sessions/YYYY/MM/DD/*<session>.jsonl``)."""

from __future__ import annotations

import json
from typing import Any

from ..backends.base import as_dict, as_list, as_str
from .claude_log import IMAGE_PLACEHOLDER
from .models import SessionMessage
from .wrappers import strip_injected_context

SHELL_TOOLS = frozenset({"exec_command", "shell", "local_shell", "shell_command"})
_TEXT_BLOCKS = frozenset({"input_text", "output_text", "text"})
_IMAGE_BLOCKS = frozenset({"input_image", "image"})


def _load_json(value: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


def _render_blocks(blocks: list[Any]) -> tuple[str, int]:
    """Join text blocks; return (text, image count)."""
    texts = []
    images = 0
    for block in blocks:
        block = as_dict(block)
        if block.get("type") in _TEXT_BLOCKS:
            text = as_str(block.get("text"))
            if text:
                texts.append(text)
        elif block.get("type") in _IMAGE_BLOCKS:
            images += 1
    return "\n".join(texts), images


def _shell_command(args: dict[str, Any]) -> str | None:
    command = args.get("cmd", args.get("command"))
    if isinstance(command, list):
        return " ".join(str(part) for part in command)
    return as_str(command)


def _tool_output(output: Any) -> str:
    if isinstance(output, str):
        decoded = _load_json(output)
        if isinstance(decoded, dict) and isinstance(decoded.get("output"), str):
            return decoded["output"]
        return output
    if isinstance(output, dict) and isinstance(output.get("output"), str):
        return output["output"]
    return "" if output is None else json.dumps(output)


class CodexLogParser:
    """Parses one rollout file.

    Codex logs each user turn twice (an ``event_msg`` and a ``response_item``);
    only the first copy is kept.
    """

    def __init__(self) -> None:
        self._tool_names: dict[str, str] = {}
        self._resolved: dict[str, str] = {}
        self._last_user_text: str | None = None

    def parse_record(self, record: dict[str, Any]) -> list[SessionMessage]:
        timestamp = as_str(record.get("timestamp")) or ""
        payload = as_dict(record.get("payload"))
        record_type = record.get("type")
        if record_type == "event_msg" and payload.get("type") == "user_message":
            return self._user_message(payload, timestamp)
        if record_type != "response_item":
            return []

        item_type = payload.get("type")
        if item_type == "message":
            return self._message(payload, timestamp)
        if item_type in ("function_call", "custom_tool_call"):
            return self._tool_call(payload, timestamp)
        if item_type in ("function_call_output", "custom_tool_call_output"):
            return self._tool_result(payload, timestamp)
        return []

    def _user(
        self, text: str, images: int, timestamp: str, uuid: str, *, image_only_ok: bool
    ) -> list[SessionMessage]:
        if not text and not (images and image_only_ok):
            return []
        if text and text == self._last_user_text:
            return []
        self._last_user_text = text or None
        content = "\n".join(([text] if text else []) + [IMAGE_PLACEHOLDER] * images)
        return [SessionMessage("user", content, timestamp, uuid)]

    def _user_message(self, payload: dict[str, Any], timestamp: str) -> list[SessionMessage]:
        message = as_str(payload.get("message")) or ""
        images = len(as_list(payload.get("images")))
        decoded = _load_json(message) if message.lstrip().startswith("[") else None
        if isinstance(decoded, list):
            message, block_images = _render_blocks(decoded)
            images += block_images
        return self._user(
            strip_injected_context(message), images, timestamp, "", image_only_ok=True
        )

    def _message(self, payload: dict[str, Any], timestamp: str) -> list[SessionMessage]:
        role = payload.get("role")
        uuid = as_str(payload.get("id")) or ""
        text, images = _render_blocks(as_list(payload.get("content")))
        if role == "user":
            # Image-only items mirror a user_message that carried the text
            return self._user(
                strip_injected_context(text), images, timestamp, uuid, image_only_ok=False
            )
        if role == "assistant" and text.strip():
            self._last_user_text = None
            return [SessionMessage("assistant", text, timestamp, uuid)]
        return []

    def _tool_call(self, payload: dict[str, Any], timestamp: str) -> list[SessionMessage]:
        self._last_user_text = None
        name = as_str(payload.get("name")) or "unknown"
        call_id = as_str(payload.get("call_id"))
        if payload.get("type") == "custom_tool_call":
            tool_input: dict[str, Any] = {"input": payload.get("input")}
        else:
            arguments = payload.get("arguments")
            decoded = _load_json(arguments) if isinstance(arguments, str) else arguments
            tool_input = decoded if isinstance(decoded, dict) else {"arguments": arguments}

        tool_name = name
        if name in SHELL_TOOLS:
            tool_name = "Bash"
            command = _shell_command(tool_input)
            tool_input = {**tool_input, "cmd": command, "command": command}
        if call_id:
            self._tool_names[call_id] = tool_name
        return [
            SessionMessage(
                "tool_use",
                json.dumps(tool_input, indent=2),
                timestamp,
                call_id or "",
                tool_name=tool_name,
                tool_input=tool_input,
                tool_use_id=call_id,
            )
        ]

    def _tool_result(self, payload: dict[str, Any], timestamp: str) -> list[SessionMessage]:
        call_id = as_str(payload.get("call_id"))
        tool_name = "unknown"
        if call_id:
            # A replayed output resolves through the consumed id
            tool_name = self._tool_names.pop(call_id, None) or self._resolved.get(call_id, "unknown")
            self._resolved[call_id] = tool_name
        return [
            SessionMessage(
                "tool_result",
                _tool_output(payload.get("output")),
                timestamp,
                call_id or "",
                tool_name=tool_name,
                tool_use_id=call_id,
            )
        ]
