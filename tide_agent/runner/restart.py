"""Auto-restart policy for crashed agent processes."""

from __future__ import annotations

from dataclasses import dataclass

from ..core.types import ActiveProcess, ProcessDeathInfo


@dataclass
class RestartDecision:
    restart: bool
    attempt: int = 0
    error: str | None = None


@dataclass
class RestartPolicy:
    """Decides whether an abnormal death should be restarted.

    Deaths that happen sooner than ``min_runtime`` after spawn are treated as
    configuration errors. The attempt counter resets once ``cooldown`` has
    passed since the last restart.
    """

    max_attempts: int = 3
    cooldown: float = 60.0
    min_runtime: float = 5.0
    enabled: bool = True

    def decide(self, death: ProcessDeathInfo, process: ActiveProcess, now: float) -> RestartDecision:
        if not self.enabled or not death.abnormal:
            return RestartDecision(False)

        if death.runtime < self.min_runtime:
            runtime_ms = int(death.runtime * 1000)
            return RestartDecision(
                False,
                error=f"Process crashed immediately ({runtime_ms}ms) - not auto-restarting.",
            )

        count = process.restart_count
        if now - process.last_restart_time > self.cooldown:
            count = 0
        if count >= self.max_attempts:
            return RestartDecision(
                False,
                error=(
                    f"Process keeps crashing - auto-restart disabled after {count} attempts. "
                    "Manual intervention required."
                ),
            )
        return RestartDecision(True, attempt=count + 1)
