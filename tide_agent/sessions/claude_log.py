"""Claude Code transcript records (``~/.claude/projects/<cwd>/<session>.jsonl``)."""

from __future__ import annotations

import json
from typing import Any

from ..backends.base import as_dict, as_list, as_str
from .models import SessionMessage
from .wrappers import strip_injected_context

IMAGE_PLACEHOLDER = "[Image attached]"


def _block_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = [as_str(as_dict(b).get("text")) for b in as_list(content)]
    return "\n".join(p for p in parts if p)


class ClaudeLogParser:
    """Parses one transcript file; keeps tool id correlation across records."""

    def __init__(self) -> None:
        self._tool_names: dict[str, str] = {}
        # Consumed ids, so a replayed tool_result keeps its name
        self._resolved: dict[str, str] = {}

    def _resolve_tool_name(self, tool_use_id: str | None) -> str:
        if not tool_use_id:
            return "unknown"
        name = self._tool_names.pop(tool_use_id, None)
        if name is None:
            return self._resolved.get(tool_use_id, "unknown")
        self._resolved[tool_use_id] = name
        return name

    def parse_record(self, record: dict[str, Any]) -> list[SessionMessage]:
        record_type = record.get("type")
        if record.get("isMeta") or record_type not in ("user", "assistant"):
            return []
        timestamp = as_str(record.get("timestamp")) or ""
        uuid = as_str(record.get("uuid")) or ""
        content = as_dict(record.get("message")).get("content")
        if record_type == "user":
            return self._parse_user(content, timestamp, uuid)
        return self._parse_assistant(content, timestamp, uuid)

    def _parse_user(self, content: Any, timestamp: str, uuid: str) -> list[SessionMessage]:
        if isinstance(content, str):
            text = strip_injected_context(content)
            return [SessionMessage("user", text, timestamp, uuid)] if text else []

        messages = []
        texts: list[str] = []
        images = 0
        for block in as_list(content):
            block = as_dict(block)
            block_type = block.get("type")
            if block_type == "tool_result":
                tool_use_id = as_str(block.get("tool_use_id"))
                tool_name = self._resolve_tool_name(tool_use_id)
                messages.append(
                    SessionMessage(
                        "tool_result",
                        _block_text(block.get("content")),
                        timestamp,
                        uuid,
                        tool_name=tool_name,
                        tool_use_id=tool_use_id,
                    )
                )
            elif block_type == "text":
                text = as_str(block.get("text"))
                if text:
                    texts.append(text)
            elif block_type == "image":
                images += 1

        # Image-only user records duplicate the turn that carried the text
        text = strip_injected_context("\n".join(texts))
        if text:
            text = "\n".join([text] + [IMAGE_PLACEHOLDER] * images)
            messages.append(SessionMessage("user", text, timestamp, uuid))
        return messages

    def _parse_assistant(self, content: Any, timestamp: str, uuid: str) -> list[SessionMessage]:
        if isinstance(content, str):
            return [SessionMessage("assistant", content, timestamp, uuid)] if content.strip() else []

        messages = []
        for block in as_list(content):
            block = as_dict(block)
            block_type = block.get("type")
            if block_type == "text":
                text = as_str(block.get("text")) or ""
                if text.strip():
                    messages.append(SessionMessage("assistant", text, timestamp, uuid))
            elif block_type == "tool_use":
                tool_id = as_str(block.get("id"))
                tool_name = as_str(block.get("name")) or "unknown"
                tool_input = as_dict(block.get("input"))
                if tool_id:
                    self._tool_names[tool_id] = tool_name
                messages.append(
                    SessionMessage(
                        "tool_use",
                        json.dumps(tool_input, indent=2),
                        timestamp,
                        uuid,
                        tool_name=tool_name,
                        tool_input=tool_input,
                        tool_use_id=tool_id,
                    )
                )
        return messages
