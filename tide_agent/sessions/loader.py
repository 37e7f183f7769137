"""Transcript loading for Claude and Codex sessions.

Claude stores one file per session under a directory derived from the working
directory; Codex stores rollout files by date, so they are found by searching
for the session id and cached once resolved.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from ..core.text import truncate
from ..errors import SessionNotFoundError
from .claude_log import ClaudeLogParser
from .codex_log import CodexLogParser
from .models import (
    ConversationHistory,
    FileChange,
    SessionActivityStatus,
    SessionInfo,
    SessionMessage,
    SessionSearchResult,
    ToolExecution,
    ToolHistory,
)

logger = logging.getLogger(__name__)

TOOL_RESULT_PREVIEW_CHARS = 500
PENDING_MESSAGE_TYPES = frozenset({"user", "tool_use", "tool_result"})
FILE_ACTIONS = {"Write": "created", "Edit": "modified", "MultiEdit": "modified", "Read": "read"}

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def encode_project_path(cwd: str) -> str:
    """Directory name Claude uses for a working directory."""
    return cwd.rstrip("/").replace("/", "-").replace("_", "-")


def deduplicate_session_messages(messages: Iterable[SessionMessage]) -> list[SessionMessage]:
    """Drop repeated messages, keeping the first occurrence and file order."""
    seen: set[tuple[str, ...]] = set()
    unique = []
    for message in messages:
        key = message.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(message)
    return unique


def _preview(message: SessionMessage) -> SessionMessage:
    if message.type != "tool_result" or len(message.content) <= TOOL_RESULT_PREVIEW_CHARS:
        return message
    return SessionMessage(
        message.type,
        truncate(message.content, TOOL_RESULT_PREVIEW_CHARS),
        message.timestamp,
        message.uuid,
        message.tool_name,
        message.tool_input,
        message.tool_use_id,
    )


def _iter_records(path: Path) -> Iterator[dict[str, Any]]:
    with open(path, encoding="utf-8", errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping unparsable line %d in %s", line_no, path)
                continue
            if isinstance(record, dict):
                yield record


class SessionLoader:
    """Reads provider transcripts and rebuilds ordered message history."""

    def __init__(
        self,
        claude_home: Path | None = None,
        codex_home: Path | None = None,
        *,
        stable_interval: float = 0.05,
        stable_timeout: float = 0.5,
    ) -> None:
        self._claude_home = claude_home or Path.home() / ".claude"
        self._codex_home = codex_home or Path.home() / ".codex"
        self._stable_interval = stable_interval
        self._stable_timeout = stable_timeout
        self._codex_paths: dict[str, Path] = {}

    # -- locating files ------------------------------------------------------

    def project_dir(self, cwd: str) -> Path:
        return self._claude_home / "projects" / encode_project_path(cwd)

    def _find_codex_file(self, session_id: str) -> Path | None:
        cached = self._codex_paths.get(session_id)
        if cached is not None:
            if cached.is_file():
                return cached
            del self._codex_paths[session_id]

        sessions_dir = self._codex_home / "sessions"
        if not sessions_dir.is_dir():
            return None
        candidates = sorted(sessions_dir.rglob(f"*{session_id}.jsonl"))
        if not candidates:
            return None
        self._codex_paths[session_id] = candidates[-1]
        return candidates[-1]

    def find_session_file(self, cwd: str, session_id: str) -> tuple[Path, str] | None:
        """Return (path, provider) for a session, or None if no file exists."""
        if not _SESSION_ID_RE.match(session_id):
            return None
        claude_file = self.project_dir(cwd) / f"{session_id}.jsonl"
        if claude_file.is_file():
            return claude_file, "claude"
        codex_file = self._find_codex_file(session_id)
        if codex_file is not None:
            return codex_file, "codex"
        return None

    def resolve_session_file(self, cwd: str, session_id: str) -> tuple[Path, str]:
        """Like :meth:`find_session_file` but raises when nothing is found."""
        found = self.find_session_file(cwd, session_id)
        if found is None:
            raise SessionNotFoundError(session_id, cwd)
        return found

    async def wait_for_stable_file(self, path: Path) -> bool:
        """Poll the file size until two reads agree or the timeout passes."""
        deadline = time.monotonic() + self._stable_timeout
        try:
            size = path.stat().st_size
        except OSError:
            return False
        while time.monotonic() < deadline:
            await asyncio.sleep(self._stable_interval)
            try:
                current = path.stat().st_size
            except OSError:
                return False
            if current == size:
                return True
            size = current
        return False

    # -- parsing -------------------------------------------------------------

    @staticmethod
    def read_messages(path: Path, provider: str) -> list[SessionMessage]:
        """Parse a transcript file into deduplicated messages, in file order."""
        parser = ClaudeLogParser() if provider == "claude" else CodexLogParser()
        messages: list[SessionMessage] = []
        try:
            for record in _iter_records(path):
                messages.extend(parser.parse_record(record))
        except OSError as exc:
            logger.warning("Cannot read transcript %s: %s", path, exc)
        return deduplicate_session_messages(messages)

    async def load_messages(self, cwd: str, session_id: str) -> list[SessionMessage] | None:
        found = self.find_session_file(cwd, session_id)
        if found is None:
            return None
        path, provider = found
        if not await self.wait_for_stable_file(path):
            logger.debug("Transcript %s still changing, reading anyway", path)
        return self.read_messages(path, provider)

    # -- public reads --------------------------------------------------------

    async def load_session(
        self, cwd: str, session_id: str, limit: int = 50, offset: int = 0
    ) -> ConversationHistory | None:
        """Return ``limit`` messages ending ``offset`` messages before the newest."""
        messages = await self.load_messages(cwd, session_id)
        if messages is None:
            return None
        total = len(messages)
        end = max(0, total - max(0, offset))
        start = max(0, end - max(0, limit))
        return ConversationHistory(
            session_id=session_id,
            messages=[_preview(m) for m in messages[start:end]],
            cwd=cwd,
            total_count=total,
            has_more=start > 0,
        )

    async def search_session(
        self, cwd: str, session_id: str, query: str, limit: int = 50
    ) -> SessionSearchResult | None:
        """Case-insensitive match on content and tool name; keeps the newest ``limit``."""
        messages = await self.load_messages(cwd, session_id)
        if messages is None:
            return None
        needle = query.lower()
        matches = [
            m
            for m in messages
            if needle in m.content.lower() or (m.tool_name and needle in m.tool_name.lower())
        ]
        kept = matches[-limit:] if limit > 0 else []
        return SessionSearchResult(
            matches=[_preview(m) for m in kept], total_matches=len(matches)
        )

    async def get_session_activity_status(
        self, cwd: str, session_id: str, active_threshold: float = 60.0
    ) -> SessionActivityStatus | None:
        """Classify whether the provider is still working on the session."""
        found = self.find_session_file(cwd, session_id)
        if found is None:
            return None
        path, provider = found
        try:
            last_modified = path.stat().st_mtime
        except OSError:
            return None
        seconds_since = max(0.0, time.time() - last_modified)
        messages = self.read_messages(path, provider)
        last = messages[-1] if messages else None
        pending = last is not None and last.type in PENDING_MESSAGE_TYPES
        return SessionActivityStatus(
            is_active=seconds_since < active_threshold and pending,
            has_pending_work=pending,
            last_modified=last_modified,
            seconds_since_last_activity=seconds_since,
            last_message_type=last.type if last else None,
            last_message_timestamp=(last.timestamp or None) if last else None,
        )

    def list_sessions(self, cwd: str) -> list[SessionInfo]:
        """Claude sessions recorded for ``cwd``, newest first."""
        project_dir = self.project_dir(cwd)
        if not project_dir.is_dir():
            return []
        sessions = []
        for path in project_dir.glob("*.jsonl"):
            try:
                last_modified = path.stat().st_mtime
            except OSError:
                continue
            messages = self.read_messages(path, "claude")
            first_user = next((m.content for m in messages if m.type == "user"), None)
            sessions.append(
                SessionInfo(
                    session_id=path.stem,
                    path=str(path),
                    last_modified=last_modified,
                    message_count=len(messages),
                    first_message=truncate(first_user, 100) if first_user else None,
                )
            )
        sessions.sort(key=lambda s: s.last_modified, reverse=True)
        return sessions

    def find_latest_session(self, cwd: str) -> SessionInfo | None:
        sessions = self.list_sessions(cwd)
        return sessions[0] if sessions else None

    async def load_tool_history(
        self,
        cwd: str,
        session_id: str,
        agent_id: str,
        agent_name: str,
        limit: int = 100,
    ) -> ToolHistory:
        """Tool calls and the file changes they imply, newest first, ``limit`` of each."""
        messages = await self.load_messages(cwd, session_id)
        history = ToolHistory()
        for message in messages or []:
            if message.type != "tool_use" or not message.tool_name:
                continue
            tool_input = message.tool_input or {}
            history.tool_executions.append(
                ToolExecution(agent_id, agent_name, message.tool_name, tool_input, message.timestamp)
            )
            action = FILE_ACTIONS.get(message.tool_name)
            file_path = tool_input.get("file_path")
            if action and isinstance(file_path, str):
                history.file_changes.append(
                    FileChange(agent_id, agent_name, action, file_path, message.timestamp)
                )
        history.tool_executions = history.tool_executions[-limit:][::-1]
        history.file_changes = history.file_changes[-limit:][::-1]
        return history
