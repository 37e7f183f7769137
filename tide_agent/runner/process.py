"""Process handles and graduated stop escalation."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol

from ..errors import SpawnError
from .procinfo import pid_alive

logger = logging.getLogger(__name__)

SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class ProcessHandle(Protocol):
    """What the runner needs from a child process.

    Tests provide in-memory fakes; production uses :class:`SubprocessHandle`.
    """

    pid: int | None
    stdout: asyncio.StreamReader
    stderr: asyncio.StreamReader

    @property
    def returncode(self) -> int | None: ...

    def write_stdin(self, data: bytes) -> bool: ...

    async def wait(self) -> int: ...

    def send_signal(self, sig: int, *, group: bool = True) -> bool: ...

    def is_alive(self) -> bool: ...


Spawner = Callable[[str, list[str], str, dict[str, str]], Awaitable[ProcessHandle]]


class SubprocessHandle:
    """Wraps an :class:`asyncio.subprocess.Process` started in its own session."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid: int | None = process.pid
        assert process.stdout is not None and process.stderr is not None
        self.stdout = process.stdout
        self.stderr = process.stderr

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def write_stdin(self, data: bytes) -> bool:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write(data)
        except (BrokenPipeError, ConnectionResetError, RuntimeError):
            return False
        return True

    async def wait(self) -> int:
        return await self._process.wait()

    def send_signal(self, sig: int, *, group: bool = True) -> bool:
        if self._process.returncode is not None or self.pid is None:
            return False
        if group and hasattr(os, "killpg"):
            try:
                os.killpg(self.pid, sig)
                return True
            except ProcessLookupError:
                return False
            except PermissionError:
                logger.debug("Cannot signal process group %s, falling back to pid", self.pid)
        try:
            self._process.send_signal(sig)
            return True
        except ProcessLookupError:
            return False

    def is_alive(self) -> bool:
        return self._process.returncode is None and pid_alive(self.pid)


async def spawn_subprocess(
    executable: str, args: list[str], cwd: str, env: dict[str, str]
) -> SubprocessHandle:
    """Start ``executable`` detached into a new process group with piped stdio."""
    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        raise SpawnError(executable, str(exc)) from exc
    return SubprocessHandle(process)


class StopPhase(str, Enum):
    RUNNING = "running"
    INTERRUPTING = "interrupting"
    TERMINATING = "terminating"
    KILLING = "killing"
    EXITED = "exited"


_NEXT_SIGNAL = {
    StopPhase.RUNNING: (StopPhase.INTERRUPTING, signal.SIGINT),
    StopPhase.INTERRUPTING: (StopPhase.TERMINATING, signal.SIGTERM),
    StopPhase.TERMINATING: (StopPhase.KILLING, SIGKILL),
}


class StopEscalation:
    """Signal escalation for one process: SIGINT, then SIGTERM, then SIGKILL.

    ``advance`` performs one transition and can be driven directly in tests;
    ``run`` drives it with timers measured from the first signal.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        *,
        terminate_after: float = 0.5,
        kill_after: float = 1.5,
    ) -> None:
        self._handle = handle
        self._terminate_after = terminate_after
        self._kill_after = kill_after
        self.phase = StopPhase.RUNNING
        self.signals_sent: list[int] = []

    def advance(self) -> StopPhase:
        if self.phase in (StopPhase.KILLING, StopPhase.EXITED):
            return self.phase
        if self.phase is not StopPhase.RUNNING and not self._handle.is_alive():
            self.phase = StopPhase.EXITED
            return self.phase
        self.phase, sig = _NEXT_SIGNAL[self.phase]
        self._handle.send_signal(sig)
        self.signals_sent.append(sig)
        return self.phase

    async def run(self) -> StopPhase:
        """Escalate until the process exits or SIGKILL has been sent."""
        if self.phase is StopPhase.RUNNING:
            self.advance()
        await asyncio.sleep(self._terminate_after)
        if self.advance() is StopPhase.EXITED:
            return self.phase
        await asyncio.sleep(max(0.0, self._kill_after - self._terminate_after))
        return self.advance()
