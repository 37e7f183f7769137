"""Error types with actionable messages."""

from __future__ import annotations


class TideAgentError(Exception):
    """Base class for tide-agent errors."""


class BackendNotFoundError(TideAgentError, ValueError):
    """Raised when a provider name has no registered backend."""

    def __init__(self, provider: str, allowed: list[str]) -> None:
        super().__init__(
            f"Unknown provider '{provider}'. Allowed values: {', '.join(sorted(allowed))}."
        )


class SpawnError(TideAgentError, RuntimeError):
    """Raised when a provider executable cannot be started."""

    def __init__(self, executable: str, details: str) -> None:
        self.executable = executable
        super().__init__(
            f"Failed to start '{executable}': {details}. Check that the CLI is installed "
            "and on PATH (see `tide-agent detect`)."
        )


class SessionNotFoundError(TideAgentError, FileNotFoundError):
    """Raised when no transcript file exists for a session."""

    def __init__(self, session_id: str, cwd: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"No transcript found for session {session_id} (cwd: {cwd}). The session may "
            "belong to another working directory or provider."
        )


class ConfigError(TideAgentError, ValueError):
    """Raised when a settings file cannot be loaded."""

    def __init__(self, details: str) -> None:
        super().__init__(f"Settings error: {details}")


class AgentNotFoundError(TideAgentError, KeyError):
    """Raised when a command targets an agent the store does not know."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}. Register it with the agent store first.")

    def __str__(self) -> str:
        return str(self.args[0])
