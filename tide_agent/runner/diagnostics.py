"""Death records and crash-pattern analysis for operators."""

from __future__ import annotations

import logging
import time
from collections import deque

from ..core.types import ProcessDeathInfo

logger = logging.getLogger(__name__)

PATTERN_WINDOW_S = 60.0
PATTERN_MIN_DEATHS = 3
QUICK_DEATH_RUNTIME_S = 5.0
QUICK_DEATH_MIN = 2

_EXIT_CODE_HINTS = {
    137: "likely OOM killed or SIGKILL",
    1: "general error",
}


def analyze_deaths(deaths: list[ProcessDeathInfo], now: float | None = None) -> list[str]:
    """Describe recurring patterns among abnormal deaths in the last minute."""
    now = time.time() if now is None else now
    recent = [
        d for d in deaths if d.abnormal and now - d.timestamp <= PATTERN_WINDOW_S
    ]
    if len(recent) < PATTERN_MIN_DEATHS:
        return []

    findings = []
    signals = {d.signal for d in recent}
    if len(signals) == 1 and None not in signals:
        findings.append(
            f"All {len(recent)} recent deaths from {signals.pop()} - possible external kill"
        )
    codes = {d.exit_code for d in recent}
    if len(codes) == 1 and None not in codes:
        code = codes.pop()
        hint = _EXIT_CODE_HINTS.get(code, "repeated failure")
        findings.append(f"All {len(recent)} recent deaths exited with code {code} - {hint}")
    quick = [d for d in recent if d.runtime < QUICK_DEATH_RUNTIME_S]
    if len(quick) >= QUICK_DEATH_MIN:
        findings.append(
            f"{len(quick)} processes died within {QUICK_DEATH_RUNTIME_S:.0f}s of starting "
            "- likely a configuration error"
        )
    return findings


class DeathLog:
    """Bounded history of process exits."""

    def __init__(self, maxlen: int = 50) -> None:
        self._deaths: deque[ProcessDeathInfo] = deque(maxlen=maxlen)

    def record(self, death: ProcessDeathInfo) -> list[str]:
        """Store ``death``, log it, and return any pattern findings."""
        self._deaths.append(death)
        runtime_ms = int(death.runtime * 1000)
        if death.abnormal:
            logger.error(
                "Agent %s process died: pid=%s exit_code=%s signal=%s runtime=%dms tracked=%s",
                death.agent_id,
                death.pid,
                death.exit_code,
                death.signal,
                runtime_ms,
                death.was_tracked,
            )
            if death.stderr:
                logger.error("Agent %s stderr tail:\n%s", death.agent_id, death.stderr)
        else:
            logger.info(
                "Agent %s process exited: pid=%s exit_code=%s signal=%s runtime=%dms",
                death.agent_id,
                death.pid,
                death.exit_code,
                death.signal,
                runtime_ms,
            )

        findings = analyze_deaths(list(self._deaths), now=death.timestamp) if death.abnormal else []
        for finding in findings:
            logger.warning("Crash pattern: %s", finding)
        return findings

    def history(self, agent_id: str | None = None) -> list[ProcessDeathInfo]:
        if agent_id is None:
            return list(self._deaths)
        return [d for d in self._deaths if d.agent_id == agent_id]
