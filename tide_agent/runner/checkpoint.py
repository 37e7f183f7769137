"""Crash-recovery checkpoint of running processes.

Checkpoint file: ~/.tide-agent/running-processes-<provider>.json (override via TIDE_AGENT_DATA_DIR)

Protocol:
- Runner persists every tracked process every few seconds -> rewrites the file
- Runner shuts down cleanly -> deletes the file
- Runner starts -> reads the file, reports which pids are still alive, deletes it
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from ..core.types import RunningProcessInfo
from .procinfo import pid_alive

logger = logging.getLogger(__name__)


@dataclass
class OrphanStatus:
    """A process from a previous runner and whether it still exists."""

    info: RunningProcessInfo
    alive: bool


class CheckpointStore:
    """Reads and writes the running-process checkpoint file."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def save(self, processes: list[RunningProcessInfo]) -> None:
        """Rewrite the checkpoint atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "processes": [p.to_dict() for p in processes],
            "saved_at": time.time(),
            "runner_pid": os.getpid(),
        }
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def load(self) -> list[RunningProcessInfo]:
        """Return checkpointed processes; corrupt entries are skipped."""
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable checkpoint %s: %s", self._path, exc)
            return []
        processes = []
        for entry in data.get("processes", []) if isinstance(data, dict) else []:
            try:
                processes.append(RunningProcessInfo.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                # Corrupt entry, skip
                continue
        return processes

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass

    def recover(self) -> list[OrphanStatus]:
        """Report processes left by a previous runner, then discard the checkpoint."""
        orphans = [OrphanStatus(info, pid_alive(info.pid)) for info in self.load()]
        for orphan in orphans:
            logger.info(
                "Checkpointed agent %s pid=%s is %s",
                orphan.info.agent_id,
                orphan.info.pid,
                "still running" if orphan.alive else "gone",
            )
        self.clear()
        return orphans
