"""Parser for ``codex exec --json`` events.

Besides mapping items to tool events, shell commands are scanned for file
operations (``apply_patch`` blocks, redirects, in-place ``sed``, ``cat``) so
the UI can show Read/Write/Edit activity the way it does for Claude.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from ..core.events import StandardEvent, TokenUsage
from .base import as_dict, as_int, as_list, as_str

TURN_ABORTED_MARKER = "<turn_aborted>"
APPLY_PATCH_SUCCESS = "Success. Updated the following files:"

_PATCH_BLOCK_RE = re.compile(r"\*\*\* Begin Patch[\s\S]*?\*\*\* End Patch")
_PATCH_HEADER_RE = re.compile(r"^\*\*\* (Add|Update|Delete) File: (.+)$")
_LC_DOUBLE_RE = re.compile(r'-lc\s+"([\s\S]*)"$')
_LC_SINGLE_RE = re.compile(r"-lc\s+'([\s\S]*)'$")
_SEGMENT_SPLIT_RE = re.compile(r"&&|\|\||;|\|")
_TOKEN_RE = re.compile(r"'[^']*'|\"[^\"]*\"|\S+")
_NUMBER_WORDS = {"one", "two", "three", "four", "five", "six", "seven", "eight", "nine", "ten"}

_READ_PATTERNS = [
    re.compile(r"\bcat\s+['\"]([^'\"]+)['\"]"),
    re.compile(r"\bcat\s+([^\s;|&]+)"),
    re.compile(r"\b(?:tail|head)\s+(?:-[^\s]+\s+)*['\"]([^'\"]+)['\"]"),
    re.compile(r"\b(?:tail|head)\s+(?:-[^\s]+\s+)*([^\s;|&]+)"),
    re.compile(r"\bsed\s+-n\s+['\"][^'\"]*['\"]\s+['\"]([^'\"]+)['\"]"),
    re.compile(r"\bsed\s+-n\s+['\"][^'\"]*['\"]\s+([^\s;|&]+)"),
]
_APPEND_PATTERNS = [
    re.compile(r"\bprintf\s+(['\"])([\s\S]*?)\1\s*>>\s*([^\s;|&]+)"),
    re.compile(r"\becho\s+(['\"])([\s\S]*?)\1\s*>>\s*([^\s;|&]+)"),
]
_REDIRECT_OPERATORS = {">>": ">>", ">": r"(?<![0-9>])>(?!>)"}


@dataclass
class InferredToolCall:
    tool_name: str  # "Read", "Write" or "Edit"
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_output: str | None = None


def _unescape_double_quoted(text: str) -> str:
    return (
        text.replace('\\"', '"').replace("\\`", "`").replace("\\$", "$").replace("\\\\", "\\")
    )


def _unescape_printf(text: str) -> str:
    return (
        text.replace("\\n", "\n")
        .replace("\\t", "\t")
        .replace("\\r", "\r")
        .replace('\\"', '"')
        .replace("\\'", "'")
        .replace("\\\\", "\\")
    )


def _unescape_regex_literal(text: str) -> str:
    return (
        text.replace("\\.", ".")
        .replace("\\$", "$")
        .replace("\\^", "^")
        .replace("\\/", "/")
        .replace("\\s*", "")
        .replace("\\n", "\n")
        .strip()
    )


def normalize_candidate_path(value: Any) -> str | None:
    """Return ``value`` if it plausibly names a file, else None."""
    if not isinstance(value, str):
        return None
    candidate = value.strip().strip("'\"")
    if not candidate or candidate == "/":
        return None
    if candidate[0] in "&(-":
        return None
    if re.fullmatch(r"[><|&]+", candidate) or candidate.isdigit():
        return None
    if not re.search(r"[/.~]", candidate) and not re.fullmatch(r"[A-Z][A-Za-z0-9_-]*", candidate):
        return None
    if candidate.lower() in _NUMBER_WORDS:
        return None
    return candidate


def _path_for_ui(path: str) -> str | None:
    normalized = normalize_candidate_path(path)
    if not normalized:
        return None
    if normalized.startswith(("/", "./", "../", "~")):
        return normalized
    return f"./{normalized}"


def extract_shell_command(command: str) -> str:
    """Unwrap ``/bin/zsh -lc "..."`` to the inner script."""
    match = _LC_DOUBLE_RE.search(command)
    if match:
        return _unescape_double_quoted(match.group(1))
    match = _LC_SINGLE_RE.search(command)
    if match:
        return match.group(1)
    return command


def _apply_patch_operations(shell: str) -> list[InferredToolCall]:
    block = _PATCH_BLOCK_RE.search(shell)
    if not block:
        return []

    calls: list[InferredToolCall] = []
    path: str | None = None
    mode: str | None = None
    old_lines: list[str] = []
    new_lines: list[str] = []

    def flush() -> None:
        if not path or not mode:
            return
        if mode == "Add":
            calls.append(
                InferredToolCall(
                    "Write", {"file_path": path, "content": "\n".join(new_lines)}, "Created file"
                )
            )
        elif mode == "Update":
            tool_input: dict[str, Any] = {"file_path": path}
            if old_lines or new_lines:
                tool_input["old_string"] = "\n".join(old_lines)
                tool_input["new_string"] = "\n".join(new_lines)
            calls.append(InferredToolCall("Edit", tool_input, "Updated file"))
        else:
            calls.append(
                InferredToolCall(
                    "Edit",
                    {
                        "file_path": path,
                        "operation": "delete",
                        "old_string": "\n".join(old_lines),
                        "new_string": "",
                    },
                    "Deleted file",
                )
            )

    for line in block.group(0).split("\n"):
        header = _PATCH_HEADER_RE.match(line)
        if header:
            flush()
            mode, path = header.group(1), header.group(2).strip()
            old_lines, new_lines = [], []
            continue
        if not path or not mode or line.startswith(("*** ", "@@")):
            continue
        if line.startswith("+"):
            new_lines.append(line[1:])
        elif line.startswith("-"):
            old_lines.append(line[1:])
    flush()
    return calls


def _redirect_targets(shell: str, operator: str) -> list[str]:
    pattern = _REDIRECT_OPERATORS[operator]
    targets: dict[str, None] = {}
    for regex in (
        re.compile(pattern + r"\s*['\"]([^'\"]+)['\"]"),
        re.compile(pattern + r"\s*([^\s;|&]+)"),
    ):
        for match in regex.finditer(shell):
            candidate = normalize_candidate_path(match.group(1))
            if candidate:
                targets[candidate] = None
    return list(targets)


def _append_edits(shell: str) -> list[InferredToolCall]:
    edits = []
    for regex in _APPEND_PATTERNS:
        for match in regex.finditer(shell):
            path = normalize_candidate_path(match.group(3))
            if not path:
                continue
            edits.append(
                InferredToolCall(
                    "Edit",
                    {
                        "file_path": path,
                        "operation": "append",
                        "old_string": "",
                        "new_string": _unescape_printf(match.group(2) or ""),
                    },
                )
            )
    return edits


def _removal_hint(segment: str) -> str | None:
    match = re.search(r"/\^?([^/$]+)\$?/d", segment)
    if match:
        return _unescape_regex_literal(match.group(1))
    match = re.search(r"unless\s+/\^?([^/$]+)\$?/", segment)
    if match:
        return _unescape_regex_literal(match.group(1))
    return None


def _in_place_edits(shell: str) -> list[InferredToolCall]:
    edits = []
    seen: set[str] = set()
    for segment in (s.strip() for s in _SEGMENT_SPLIT_RE.split(shell)):
        if not segment:
            continue
        if not (re.search(r"\bsed\s+-i\b", segment) or re.search(r"\bperl\s+-pi\b", segment)):
            continue
        path = None
        for token in reversed(_TOKEN_RE.findall(segment)):
            path = normalize_candidate_path(token)
            if path:
                break
        if not path:
            continue
        hint = _removal_hint(segment)
        key = f"{path}:{hint or ''}"
        if key in seen:
            continue
        seen.add(key)
        edits.append(
            InferredToolCall(
                "Edit",
                {
                    "file_path": path,
                    "operation": "in_place_edit",
                    "old_string": hint or "",
                    "new_string": "",
                },
            )
        )
    return edits


def _read_targets(shell: str) -> list[str]:
    targets: dict[str, None] = {}
    for regex in _READ_PATTERNS:
        for match in regex.finditer(shell):
            candidate = normalize_candidate_path(match.group(1))
            if candidate:
                targets[candidate] = None
    return list(targets)


def _updated_paths_from_output(output: str) -> list[str]:
    paths: dict[str, None] = {}
    for line in output.split("\n"):
        line = line.strip()
        if line.startswith("- "):
            paths[line[2:].strip()] = None
    return list(paths)


def infer_tool_calls(command: str | None, output: str | None = None) -> list[InferredToolCall]:
    """Infer file-level tool calls from a shell command line."""
    if not command:
        return []

    calls: list[InferredToolCall] = []
    seen: set[str] = set()
    shell = extract_shell_command(command)

    def add(call: InferredToolCall) -> None:
        path = _path_for_ui(as_str(call.tool_input.get("file_path")) or "")
        if not path:
            return
        call.tool_input["file_path"] = path
        key = f"{call.tool_name}:{path}:{call.tool_input.get('operation') or ''}"
        if key in seen:
            return
        seen.add(key)
        calls.append(call)

    for call in _apply_patch_operations(shell):
        add(call)
    for call in _append_edits(shell):
        add(call)
    for path in _redirect_targets(shell, ">>"):
        add(
            InferredToolCall(
                "Edit",
                {"file_path": path, "operation": "append", "old_string": "", "new_string": ""},
            )
        )
    for path in _redirect_targets(shell, ">"):
        if path != "/dev/null":
            add(InferredToolCall("Write", {"file_path": path}))
    for call in _in_place_edits(shell):
        add(call)
    for path in _read_targets(shell):
        add(InferredToolCall("Read", {"file_path": path}))

    if not calls and output and APPLY_PATCH_SUCCESS in output:
        for path in _updated_paths_from_output(output):
            add(InferredToolCall("Edit", {"file_path": path}))
    return calls


class CodexEventParser:
    """Stateful per-stream parser; remembers which tool each item id started."""

    def __init__(self) -> None:
        self._active_tools: dict[str, str] = {}

    def parse_line(self, line: str) -> list[StandardEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            return self.parse_event(json.loads(line))
        except json.JSONDecodeError:
            return []

    def parse_event(self, raw: Any) -> list[StandardEvent]:
        event = as_dict(raw)
        event_type = event.get("type")
        if event_type == "item.started":
            return self._item_started(as_dict(event.get("item")))
        if event_type == "item.completed":
            return self._item_completed(as_dict(event.get("item")))
        if event_type == "turn.completed":
            return self._turn_completed(event.get("usage"))
        if event_type == "turn.failed":
            message = as_str(as_dict(event.get("error")).get("message"))
            return [StandardEvent(type="error", error_message=message or "Turn failed")]
        if event_type == "error":
            message = as_str(event.get("message"))
            return [StandardEvent(type="error", error_message=message or "Unknown error")]
        return []

    def _item_started(self, item: dict[str, Any]) -> list[StandardEvent]:
        item_type = item.get("type")
        item_id = as_str(item.get("id"))
        if item_type == "web_search":
            tool_name, tool_input = "web_search", _web_search_input(item)
        elif item_type == "command_execution":
            tool_name = "Bash"
            tool_input = {"command": as_str(item.get("command")), "status": as_str(item.get("status"))}
        else:
            return []
        if item_id:
            self._active_tools[item_id] = tool_name
        return [
            StandardEvent(
                type="tool_start",
                tool_name=tool_name,
                tool_input=tool_input,
                tool_use_id=item_id,
                uuid=item_id,
            )
        ]

    def _item_completed(self, item: dict[str, Any]) -> list[StandardEvent]:
        item_type = item.get("type")
        item_id = as_str(item.get("id"))
        text = as_str(item.get("text"))

        if item_type == "reasoning" and text:
            return [StandardEvent(type="thinking", text=text, is_streaming=False, uuid=item_id)]
        if item_type == "agent_message" and text:
            if TURN_ABORTED_MARKER in text:
                return []
            return [StandardEvent(type="text", text=text, is_streaming=False, uuid=item_id)]

        if item_type == "web_search":
            tool_name = self._active_tools.pop(item_id, "web_search") if item_id else "web_search"
            return [
                StandardEvent(
                    type="tool_result",
                    tool_name=tool_name,
                    tool_output=json.dumps(_web_search_input(item)),
                    tool_use_id=item_id,
                )
            ]

        if item_type == "command_execution":
            tool_name = self._active_tools.pop(item_id, "Bash") if item_id else "Bash"
            command = as_str(item.get("command"))
            output = as_str(item.get("aggregated_output"))
            events: list[StandardEvent] = []
            for call in infer_tool_calls(command, output):
                events.append(
                    StandardEvent(type="tool_start", tool_name=call.tool_name, tool_input=call.tool_input)
                )
                if call.tool_output:
                    events.append(
                        StandardEvent(
                            type="tool_result", tool_name=call.tool_name, tool_output=call.tool_output
                        )
                    )
            events.append(
                StandardEvent(
                    type="tool_result",
                    tool_name=tool_name,
                    tool_output=_command_output(item),
                    tool_use_id=item_id,
                )
            )
            return events
        return []

    @staticmethod
    def _turn_completed(raw_usage: Any) -> list[StandardEvent]:
        if not isinstance(raw_usage, dict):
            return []
        tokens = TokenUsage(
            input_tokens=as_int(raw_usage.get("input_tokens")) or 0,
            output_tokens=as_int(raw_usage.get("output_tokens")) or 0,
            cache_read_input_tokens=as_int(raw_usage.get("cached_input_tokens")) or 0,
        )
        return [StandardEvent(type="step_complete", tokens=tokens)]


def _web_search_input(item: dict[str, Any]) -> dict[str, Any]:
    action = as_dict(item.get("action"))
    queries = [q for q in as_list(action.get("queries")) if isinstance(q, str)]
    return {
        "query": as_str(item.get("query")),
        "action_type": as_str(action.get("type")),
        "action_query": as_str(action.get("query")),
        "action_queries": queries or None,
        "action_url": as_str(action.get("url")),
    }


def _command_output(item: dict[str, Any]) -> str:
    output = as_str(item.get("aggregated_output"))
    if output:
        return output
    exit_code = as_int(item.get("exit_code"))
    if exit_code is not None:
        return f"[exit {exit_code}]"
    status = as_str(item.get("status"))
    if status:
        return f"Command status: {status}"
    return ""
