"""Provider backends and lookup by name."""

from __future__ import annotations

from ..config import RunnerSettings
from ..errors import BackendNotFoundError
from .base import BackendConfig, CLIBackend
from .claude import ClaudeBackend
from .codex import CodexBackend

PROVIDERS = ("claude", "codex")


def get_backend(provider: str, settings: RunnerSettings | None = None) -> CLIBackend:
    """Create a fresh backend instance for ``provider``."""
    if provider == "claude":
        return ClaudeBackend(settings)
    if provider == "codex":
        return CodexBackend()
    raise BackendNotFoundError(provider, list(PROVIDERS))


__all__ = [
    "PROVIDERS",
    "BackendConfig",
    "CLIBackend",
    "ClaudeBackend",
    "CodexBackend",
    "get_backend",
]
