"""Transcript reconstruction from provider session logs."""

from .loader import SessionLoader, deduplicate_session_messages, encode_project_path
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

__all__ = [
    "ConversationHistory",
    "FileChange",
    "SessionActivityStatus",
    "SessionInfo",
    "SessionLoader",
    "SessionMessage",
    "SessionSearchResult",
    "ToolExecution",
    "ToolHistory",
    "deduplicate_session_messages",
    "encode_project_path",
]
