"""Process supervision records: requests, live bindings, deaths, checkpoints."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncio

    from ..runner.process import ProcessHandle


@dataclass
class CodexOptions:
    """Codex-only launch options."""

    full_auto: bool = True
    approval_mode: str = "on-request"
    sandbox: str = "workspace-write"
    search: bool = False
    profile: str | None = None


@dataclass
class RunnerRequest:
    """One invocation intent for an agent, consumed by ``ProcessRunner.run``."""

    agent_id: str
    prompt: str
    working_dir: str
    session_id: str | None = None
    model: str | None = None
    permission_mode: str = "bypass"  # "bypass" or "interactive"
    system_prompt: str | None = None
    force_new_session: bool = False
    use_chrome: bool = False
    codex: CodexOptions | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunnerRequest:
        values = dict(data)
        codex = values.get("codex")
        if isinstance(codex, dict):
            values["codex"] = CodexOptions(**codex)
        return cls(**values)


@dataclass
class ActiveProcess:
    """A live subprocess bound to an agent. Owned by exactly one runner."""

    agent_id: str
    handle: ProcessHandle
    last_request: RunnerRequest
    session_id: str | None = None
    start_time: float = field(default_factory=time.time)
    last_activity_time: float = field(default_factory=time.time)
    restart_count: int = 0
    last_restart_time: float = 0.0
    stderr_tail: str = ""
    stopping: bool = False
    exit_handled: bool = False
    task: asyncio.Task[None] | None = None
    activity_callbacks: list[Callable[[], None]] = field(default_factory=list)

    @property
    def pid(self) -> int | None:
        return self.handle.pid


@dataclass
class ProcessDeathInfo:
    """Diagnostic record of one process exit."""

    agent_id: str
    pid: int | None
    exit_code: int | None
    signal: str | None
    runtime: float  # seconds
    was_tracked: bool
    stderr: str
    timestamp: float = field(default_factory=time.time)
    intentional: bool = False

    @property
    def abnormal(self) -> bool:
        return not self.intentional and self.exit_code != 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RunningProcessInfo:
    """Checkpoint entry for a process alive at the last persist tick."""

    agent_id: str
    pid: int
    session_id: str | None
    start_time: float
    last_request: RunnerRequest | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_request"] = self.last_request.to_dict() if self.last_request else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunningProcessInfo:
        request = data.get("last_request")
        return cls(
            agent_id=str(data["agent_id"]),
            pid=int(data["pid"]),
            session_id=data.get("session_id"),
            start_time=float(data.get("start_time", 0.0)),
            last_request=RunnerRequest.from_dict(request) if isinstance(request, dict) else None,
        )
