from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from fakes import FakeSpawner
from tide_agent.backends.base import CLIBackend
from tide_agent.cli import app
from tide_agent.core.types import RunningProcessInfo
from tide_agent.runner import CheckpointStore
from tide_agent.sessions.loader import encode_project_path

runner = CliRunner()


@pytest.fixture
def homes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("TIDE_AGENT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("TIDE_AGENT_CLAUDE_HOME", str(tmp_path / "claude"))
    monkeypatch.setenv("TIDE_AGENT_CODEX_HOME", str(tmp_path / "codex"))
    return tmp_path


@pytest.fixture
def repo(homes: Path) -> Path:
    path = (homes / "repo").resolve()
    path.mkdir()
    return path


def _write_session(homes: Path, repo: Path, session_id: str, records: list[dict]) -> None:
    path = homes / "claude" / "projects" / encode_project_path(str(repo)) / f"{session_id}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8")


def _turn(session_id: str = "s1") -> list[dict]:
    return [
        {
            "type": "user",
            "timestamp": "2025-01-02T10:00:00Z",
            "uuid": "u1",
            "message": {"content": "refactor the parser"},
        },
        {
            "type": "assistant",
            "timestamp": "2025-01-02T10:00:05Z",
            "uuid": "u2",
            "message": {"content": [{"type": "text", "text": "Done refactoring"}]},
        },
    ]


def test_sessions_lists_recorded_sessions(homes, repo) -> None:
    _write_session(homes, repo, "s1", _turn())

    result = runner.invoke(app, ["sessions", "--cwd", str(repo)])

    assert result.exit_code == 0
    assert "s1" in result.output
    assert "refactor the parser" in result.output


def test_sessions_empty(homes, repo) -> None:
    result = runner.invoke(app, ["sessions", "--cwd", str(repo)])

    assert result.exit_code == 0
    assert "No sessions found" in result.output


def test_history_json(homes, repo) -> None:
    _write_session(homes, repo, "s1", _turn())

    result = runner.invoke(app, ["history", "s1", "--cwd", str(repo), "--json"])

    assert result.exit_code == 0
    assert '"total_count": 2' in result.output
    assert '"has_more": false' in result.output


def test_history_text_paging_hint(homes, repo) -> None:
    _write_session(homes, repo, "s1", _turn())

    result = runner.invoke(app, ["history", "s1", "--cwd", str(repo), "--limit", "1"])

    assert result.exit_code == 0
    assert "Done refactoring" in result.output
    assert "refactor the parser" not in result.output
    assert "--offset 1" in result.output


def test_history_unknown_session(homes, repo) -> None:
    result = runner.invoke(app, ["history", "missing", "--cwd", str(repo)])

    assert result.exit_code == 1
    assert "No transcript found for session missing" in result.output


def test_search_and_activity(homes, repo) -> None:
    _write_session(homes, repo, "s1", _turn())

    found = runner.invoke(app, ["search", "s1", "PARSER", "--cwd", str(repo)])
    activity = runner.invoke(app, ["activity", "s1", "--cwd", str(repo), "--json"])

    assert found.exit_code == 0
    assert "1 shown, 1 total" in found.output
    assert activity.exit_code == 0
    assert '"has_pending_work": false' in activity.output


def test_bad_config_file_exits(homes, repo, tmp_path) -> None:
    config = tmp_path / "bad.yaml"
    config.write_text("nonsense_key: 1\n", encoding="utf-8")

    result = runner.invoke(app, ["sessions", "--cwd", str(repo), "--config", str(config)])

    assert result.exit_code == 1
    assert "unknown keys nonsense_key" in result.output


def test_run_rejects_unknown_provider(homes) -> None:
    result = runner.invoke(app, ["run", "hello", "--provider", "gemini"])

    assert result.exit_code == 2
    assert "Unknown provider 'gemini'" in result.output


def test_run_streams_one_turn(homes, repo, monkeypatch) -> None:
    spawner = FakeSpawner()

    async def spawn(executable, args, cwd, env):
        handle = await spawner(executable, args, cwd, env)
        handle.emit(
            {"type": "system", "subtype": "init", "session_id": "s9", "model": "sonnet", "tools": []},
            {"type": "assistant", "uuid": "m1", "message": {"content": [{"type": "text", "text": "All green"}]}},
            {"type": "result", "result": "ok", "usage": {"input_tokens": 1200, "output_tokens": 34}},
        )
        return handle

    monkeypatch.setattr("tide_agent.runner.runner.spawn_subprocess", spawn)

    result = runner.invoke(app, ["run", "check the tests", "--cwd", str(repo)])

    assert result.exit_code == 0, result.output
    assert "All green" in result.output
    assert "session: s9" in result.output
    assert "tokens: 1.2K" in result.output
    (call,) = spawner.calls
    assert call.cwd == str(repo)
    assert "--dangerously-skip-permissions" in call.args
    assert spawner.handles[0].stdin_messages()[0]["message"]["content"] == "check the tests"


def test_detect_reports_missing_backends(homes, monkeypatch) -> None:
    monkeypatch.setattr(CLIBackend, "detect_installation", lambda self: None)

    result = runner.invoke(app, ["detect"])

    assert result.exit_code == 1
    assert result.output.count("not found") == 2


def test_checkpoint_lists_and_clears(homes) -> None:
    store = CheckpointStore(homes / "data" / "running-processes-claude.json")
    store.save([RunningProcessInfo(agent_id="a1", pid=9_000_123, session_id="sess-1234", start_time=0.0)])

    listed = runner.invoke(app, ["checkpoint", "--clear"])

    assert listed.exit_code == 0
    assert "agent=a1 pid=9000123 session=sess-123" in listed.output
    assert "gone" in listed.output
    assert not store.path.exists()
    assert "No checkpointed processes" in runner.invoke(app, ["checkpoint"]).output
