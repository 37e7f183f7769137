"""Backend contract shared by provider adapters."""

from __future__ import annotations

import os
import shutil
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..core.events import StandardEvent
from ..core.types import CodexOptions, RunnerRequest


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


@dataclass
class BackendConfig:
    """Launch parameters for one provider process."""

    agent_id: str
    prompt: str
    working_dir: str
    session_id: str | None = None
    model: str | None = None
    permission_mode: str = "bypass"
    system_prompt: str | None = None
    use_chrome: bool = False
    codex: CodexOptions | None = None

    @classmethod
    def from_request(cls, request: RunnerRequest) -> BackendConfig:
        return cls(
            agent_id=request.agent_id,
            prompt=request.prompt,
            working_dir=request.working_dir,
            session_id=None if request.force_new_session else request.session_id,
            model=request.model,
            permission_mode=request.permission_mode,
            system_prompt=request.system_prompt,
            use_chrome=request.use_chrome,
            codex=request.codex,
        )


class CLIBackend(ABC):
    """Adapter between one provider CLI and the normalized event model.

    Instances are cheap but stateful: tool-result correlation is kept per
    instance, so each runner owns its own backend.
    """

    name: str = ""
    executable_name: str = ""

    @abstractmethod
    def build_args(self, config: BackendConfig) -> list[str]:
        """Return the CLI arguments (without the executable) for ``config``."""

    @abstractmethod
    def parse_event(self, raw: Any) -> list[StandardEvent]:
        """Translate one decoded stdout record into zero or more events."""

    @abstractmethod
    def extract_session_id(self, raw: Any) -> str | None:
        """Return the session id if ``raw`` is the session initialization record."""

    def requires_stdin_input(self) -> bool:
        return False

    def format_stdin_input(self, prompt: str) -> str:
        return prompt

    def candidate_paths(self) -> list[Path]:
        """Well-known install locations, most specific first."""
        home = Path.home()
        name = self.executable_name
        if sys.platform == "win32":
            appdata = Path(os.getenv("APPDATA", str(home / "AppData" / "Roaming")))
            local = Path(os.getenv("LOCALAPPDATA", str(home / "AppData" / "Local")))
            return [
                appdata / "npm" / f"{name}.cmd",
                local / "Programs" / name / f"{name}.exe",
                home / ".local" / "bin" / f"{name}.exe",
            ]
        return [
            home / ".local" / "bin" / name,
            home / ".bun" / "bin" / name,
            Path("/usr/local/bin") / name,
            Path("/usr/bin") / name,
        ]

    def detect_installation(self) -> str | None:
        for path in self.candidate_paths():
            if path.is_file():
                return str(path)
        return shutil.which(self.executable_name)

    def get_executable_path(self) -> str:
        return self.detect_installation() or self.executable_name
