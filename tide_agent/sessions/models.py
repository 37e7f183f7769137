"""Reconstructed transcript types."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

MESSAGE_TYPES = ("user", "assistant", "tool_use", "tool_result")


@dataclass(frozen=True)
class SessionMessage:
    """One transcript turn, rebuilt from one or more log records."""

    type: str  # "user", "assistant", "tool_use" or "tool_result"
    content: str
    timestamp: str = ""
    uuid: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_use_id: str | None = None

    @property
    def dedup_key(self) -> tuple[str, str, str, str, str, str]:
        return (
            self.type,
            self.timestamp,
            self.uuid,
            self.content,
            self.tool_name or "",
            self.tool_use_id or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConversationHistory:
    """A page of messages, oldest first."""

    session_id: str
    messages: list[SessionMessage]
    cwd: str
    total_count: int
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "messages": [m.to_dict() for m in self.messages],
            "cwd": self.cwd,
            "total_count": self.total_count,
            "has_more": self.has_more,
        }


@dataclass
class SessionSearchResult:
    matches: list[SessionMessage]
    total_matches: int


@dataclass
class SessionActivityStatus:
    """Whether a provider still appears to be working on a session."""

    is_active: bool
    has_pending_work: bool
    last_modified: float
    seconds_since_last_activity: float
    last_message_type: str | None = None
    last_message_timestamp: str | None = None


@dataclass
class SessionInfo:
    session_id: str
    path: str
    last_modified: float
    message_count: int
    first_message: str | None = None


@dataclass
class ToolExecution:
    agent_id: str
    agent_name: str
    tool_name: str
    tool_input: dict[str, Any]
    timestamp: str


@dataclass
class FileChange:
    agent_id: str
    agent_name: str
    action: str  # "created", "modified" or "read"
    file_path: str
    timestamp: str


@dataclass
class ToolHistory:
    tool_executions: list[ToolExecution] = field(default_factory=list)
    file_changes: list[FileChange] = field(default_factory=list)
