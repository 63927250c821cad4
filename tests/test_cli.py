"""Test CLI entry points and exit codes."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner import cli
from ralph_runner.constants import EXIT_FATAL, EXIT_OK
from ralph_runner.locking import RunLock


STORIES = [
    {"id": "US-001", "title": "First", "priority": 2, "passes": True},
    {"id": "US-002", "title": "Second", "priority": 1, "passes": False},
]


def _git_init(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)
    (path / "ralph").mkdir()
    (path / "ralph" / "prd.json").write_text(json.dumps({"project": "demo", "userStories": STORIES}))
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)


def test_status_json_reports_progress(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_dir = tmp_path / "repo"
    _git_init(project_dir)

    code = cli.main(["--project-dir", str(project_dir), "status", "--json"])

    assert code == EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert payload["project"] == "demo"
    assert payload["total"] == 2
    assert payload["done"] == 1
    assert payload["next"] == ["US-002"]


def test_status_table_renders(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_dir = tmp_path / "repo"
    _git_init(project_dir)

    assert cli.main(["--project-dir", str(project_dir), "status"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "US-002" in out
    assert "1/2 complete" in out


def test_missing_work_item_file_is_fatal(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_dir = tmp_path / "empty"
    project_dir.mkdir()

    assert cli.main(["--project-dir", str(project_dir), "status"]) == EXIT_FATAL
    assert "not found" in capsys.readouterr().err


def test_parallel_refuses_when_another_run_holds_the_lock(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    project_dir = tmp_path / "repo"
    _git_init(project_dir)
    monkeypatch.setenv("RALPH_WORKER_COMMAND", f"{sys.executable} -c pass {{prompt}}")
    monkeypatch.setattr(cli, "_install_termination_handler", lambda: None)

    with RunLock(project_dir) as lock:
        code = cli.main(["--project-dir", str(project_dir), "parallel", "--max-parallel", "2"])
        assert lock.lock_dir.exists()

    assert code == EXIT_FATAL
    assert "holds the lock" in capsys.readouterr().err


def test_run_with_missing_worker_executable_is_fatal(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    project_dir = tmp_path / "repo"
    _git_init(project_dir)
    monkeypatch.setenv("RALPH_WORKER_COMMAND", "definitely-not-an-agent-binary {prompt}")

    code = cli.main(["--project-dir", str(project_dir), "run"])

    assert code == EXIT_FATAL
    assert "not found on PATH" in capsys.readouterr().err


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        cli.main([])
