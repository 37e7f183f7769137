"""Subprocess supervision: spawn, stream, stop, watchdog, restart, checkpoint."""

from .checkpoint import CheckpointStore, OrphanStatus
from .diagnostics import DeathLog, analyze_deaths
from .process import ProcessHandle, StopEscalation, StopPhase, SubprocessHandle, spawn_subprocess
from .restart import RestartDecision, RestartPolicy
from .runner import ProcessRunner
from .stream import LineDecoder

__all__ = [
    "CheckpointStore",
    "DeathLog",
    "LineDecoder",
    "OrphanStatus",
    "ProcessHandle",
    "ProcessRunner",
    "RestartDecision",
    "RestartPolicy",
    "StopEscalation",
    "StopPhase",
    "SubprocessHandle",
    "analyze_deaths",
    "spawn_subprocess",
]
