"""Runner settings: environment defaults, optionally loaded from YAML."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

DEFAULT_SERVER_PORT = 5174


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    return Path(value).expanduser() if value else default


def _default_server_url() -> str:
    explicit = os.getenv("TIDE_AGENT_SERVER_URL")
    if explicit:
        return explicit
    port = os.getenv("TIDE_PORT") or os.getenv("PORT") or str(DEFAULT_SERVER_PORT)
    return f"http://localhost:{port}"


@dataclass
class RunnerSettings:
    """Tunables for process supervision and on-disk locations.

    Paths and the callback URL come from the environment; timing values
    default to the supervision policy constants. Load overrides from YAML::

        settings = RunnerSettings.from_file("tide-agent.yaml")
    """

    data_dir: Path = field(
        default_factory=lambda: _env_path("TIDE_AGENT_DATA_DIR", Path.home() / ".tide-agent")
    )
    claude_home: Path = field(
        default_factory=lambda: _env_path("TIDE_AGENT_CLAUDE_HOME", Path.home() / ".claude")
    )
    codex_home: Path = field(
        default_factory=lambda: _env_path("TIDE_AGENT_CODEX_HOME", Path.home() / ".codex")
    )
    server_url: str = field(default_factory=_default_server_url)

    watchdog_interval: float = 5.0
    checkpoint_interval: float = 10.0
    max_restart_attempts: int = 3
    restart_cooldown: float = 60.0
    min_runtime_for_restart: float = 5.0
    restart_delay: float = 1.0
    stop_terminate_after: float = 0.5
    stop_kill_after: float = 1.5
    stderr_tail_chars: int = 2048
    death_history_size: int = 50
    auto_restart: bool = True

    def checkpoint_file(self, provider: str) -> Path:
        return self.data_dir / f"running-processes-{provider}.json"

    @property
    def prompts_dir(self) -> Path:
        return self.data_dir / "prompts"

    @property
    def hook_settings_file(self) -> Path:
        return self.data_dir / "hook-settings.json"

    @property
    def hook_script(self) -> Path:
        return self.data_dir / "hooks" / "permission-hook.sh"

    @classmethod
    def from_file(cls, path: str | Path) -> RunnerSettings:
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"file not found: {path}")
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a YAML mapping")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunnerSettings:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                f"unknown keys {', '.join(unknown)}. Allowed keys: {', '.join(sorted(known))}"
            )
        values = dict(data)
        for key in ("data_dir", "claude_home", "codex_home"):
            if key in values:
                values[key] = Path(str(values[key])).expanduser()
        return cls(**values)
