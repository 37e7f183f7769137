"""Best-effort OS process queries: liveness, resident memory, working directory."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")


def pid_alive(pid: int | None) -> bool:
    """Check if a process with the given PID is alive."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but we can't signal it
        return True
    except OSError:
        return False


def _rss_kb_from_proc(pid: int) -> int | None:
    try:
        status = (PROC_ROOT / str(pid) / "status").read_text(encoding="utf-8")
    except OSError:
        return None
    for line in status.splitlines():
        if line.startswith("VmRSS:"):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1])
    return None


def _rss_kb_from_ps(pid: int) -> int | None:
    try:
        result = subprocess.run(
            ["ps", "-o", "rss=", "-p", str(pid)],
            capture_output=True,
            text=True,
            timeout=2,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    value = result.stdout.strip()
    return int(value) if value.isdigit() else None


def get_process_memory_mb(pid: int | None) -> int | None:
    """Resident memory of ``pid`` in MB, or None when it cannot be determined."""
    if not pid:
        return None
    rss_kb = None
    if sys.platform.startswith("linux"):
        rss_kb = _rss_kb_from_proc(pid)
    if rss_kb is None and sys.platform != "win32":
        rss_kb = _rss_kb_from_ps(pid)
    if rss_kb is None:
        return None
    return round(rss_kb / 1024)


def find_processes_in_cwd(executable_name: str, cwd: str) -> list[int]:
    """PIDs of processes named ``executable_name`` whose working directory is ``cwd``.

    Only implemented where ``/proc`` exists; elsewhere returns an empty list.
    """
    if not PROC_ROOT.is_dir():
        return []
    target = os.path.realpath(cwd)
    matches = []
    for entry in PROC_ROOT.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            cmdline = (entry / "cmdline").read_bytes().split(b"\0")
            proc_cwd = os.readlink(entry / "cwd")
        except OSError:
            continue
        if not cmdline or not cmdline[0]:
            continue
        names = {os.path.basename(part.decode(errors="replace")) for part in cmdline[:2]}
        if executable_name in names and os.path.realpath(proc_cwd) == target:
            matches.append(int(entry.name))
    return matches
