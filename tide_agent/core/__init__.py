"""Core types shared by backends, the runner and the session loader."""

from .events import ModelUsage, RunnerCallbacks, StandardEvent, TokenUsage
from .types import ActiveProcess, ProcessDeathInfo, RunnerRequest, RunningProcessInfo

__all__ = [
    "ActiveProcess",
    "ModelUsage",
    "ProcessDeathInfo",
    "RunnerCallbacks",
    "RunnerRequest",
    "RunningProcessInfo",
    "StandardEvent",
    "TokenUsage",
]
