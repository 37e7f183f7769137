"""tide-agent: supervision of Claude and Codex CLI agents and their session transcripts."""

__version__ = "0.1.0"

from .accounting import ContextAccountant, ContextStats, parse_context_output, parse_usage_output
from .backends import ClaudeBackend, CodexBackend, get_backend
from .config import RunnerSettings
from .core import RunnerCallbacks, RunnerRequest, StandardEvent
from .runner import ProcessRunner
from .sessions import SessionLoader
from .supervisor import AgentRecord, AgentSupervisor, InMemoryAgentStore

__all__ = [
    "__version__",
    "AgentRecord",
    "AgentSupervisor",
    "ClaudeBackend",
    "CodexBackend",
    "ContextAccountant",
    "ContextStats",
    "InMemoryAgentStore",
    "ProcessRunner",
    "RunnerCallbacks",
    "RunnerRequest",
    "RunnerSettings",
    "SessionLoader",
    "StandardEvent",
    "get_backend",
    "parse_context_output",
    "parse_usage_output",
]
