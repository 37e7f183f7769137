from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeClock, FakeSpawner
from tide_agent.config import RunnerSettings


@pytest.fixture
def settings(tmp_path: Path) -> RunnerSettings:
    return RunnerSettings(
        data_dir=tmp_path / "data",
        claude_home=tmp_path / "claude",
        codex_home=tmp_path / "codex",
        server_url="http://localhost:5174",
        restart_delay=0.0,
        stop_terminate_after=0.01,
        stop_kill_after=0.02,
    )


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
