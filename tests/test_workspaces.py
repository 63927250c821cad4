"""Test worktree-backed workspaces against a real git repository."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner.git_utils import _git_branch_exists
from ralph_runner.models import CleanupResult
from ralph_runner.workspaces import (
    NestedWorkspaceError,
    WorkspaceError,
    WorkspaceManager,
    cleanup_all_worktrees,
)


def _run(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def _git_init(path: Path) -> None:
    """Initialize a git repo on `main` with an initial commit."""
    path.mkdir(parents=True, exist_ok=True)
    _run(path, "init")
    _run(path, "symbolic-ref", "HEAD", "refs/heads/main")
    _run(path, "config", "user.email", "test@test.com")
    _run(path, "config", "user.name", "Test")
    _run(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# init\n")
    _run(path, "add", "-A")
    _run(path, "commit", "-m", "initial")


def test_branch_and_path_naming(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    manager = WorkspaceManager(repo, "1700000000-abcd1234")

    assert manager.branch_name("job1", "US-001", "Add login form!") == (
        "ralph/parallel-1700000000-abcd1234-job1-US-001-add-login-form"
    )
    assert manager.branch_name("job2", "US 002") == "ralph/parallel-1700000000-abcd1234-job2-US-002"
    assert manager.workspace_path("job1") == repo.resolve() / ".ralph-worktrees" / "1700000000-abcd1234-job1"


def test_create_commit_and_cleanup(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    base = _run(repo, "rev-parse", "HEAD")
    manager = WorkspaceManager(repo, "run1")

    workspace = manager.create("US-001", "job1", base, "First story")

    assert workspace.path.is_dir()
    assert (workspace.path / "README.md").read_text() == "# init\n"
    assert _run(workspace.path, "rev-parse", "--abbrev-ref", "HEAD") == workspace.branch
    assert _run(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"

    (workspace.path / "feature.txt").write_text("feature\n")
    _run(workspace.path, "add", "feature.txt")
    _run(workspace.path, "commit", "-m", "feature")

    assert not (repo / "feature.txt").exists()
    assert manager.cleanup(workspace) is CleanupResult.CLEANED
    assert not workspace.path.exists()
    assert _git_branch_exists(repo, workspace.branch)

    assert manager.delete_branch(workspace.branch) is True
    assert not _git_branch_exists(repo, workspace.branch)


def test_dirty_workspace_is_left_in_place(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    manager = WorkspaceManager(repo, "run1")
    workspace = manager.create("US-001", "job1", "HEAD")

    (workspace.path / "scratch.txt").write_text("uncommitted\n")

    assert manager.is_dirty(workspace) is True
    assert manager.cleanup(workspace) is CleanupResult.LEFT_IN_PLACE
    assert (workspace.path / "scratch.txt").exists()

    removed, kept = cleanup_all_worktrees(repo)
    assert removed == []
    assert kept == [workspace.path]


def test_seeded_files_do_not_make_a_workspace_dirty(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    (repo / "progress.txt").write_text("# Progress Log\n")
    (repo / ".ralph").mkdir()
    (repo / ".ralph" / "guardrails.md").write_text("# Guardrails\n")
    manager = WorkspaceManager(repo, "run1")

    workspace = manager.seed(
        manager.create("US-001", "job1", "HEAD"),
        ["progress.txt", ".ralph/guardrails.md", ".ralph/missing.log"],
    )

    assert workspace.seeded == ("progress.txt", ".ralph/guardrails.md")
    assert (workspace.path / "progress.txt").read_text() == "# Progress Log\n"
    assert manager.is_dirty(workspace) is False
    assert manager.cleanup(workspace) is CleanupResult.CLEANED


def test_recreating_a_workspace_replaces_leftovers(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    manager = WorkspaceManager(repo, "run1")
    first = manager.create("US-001", "job1", "HEAD")
    (first.path / "leftover.txt").write_text("stale\n")

    second = manager.create("US-001", "job1", "HEAD")

    assert second.path == first.path
    assert not (second.path / "leftover.txt").exists()


def test_nested_worktree_and_non_repo_are_rejected(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    workspace = WorkspaceManager(repo, "run1").create("US-001", "job1", "HEAD")

    with pytest.raises(NestedWorkspaceError):
        WorkspaceManager(workspace.path, "run2")

    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(WorkspaceError, match="not a git repository"):
        WorkspaceManager(plain, "run3")


def test_invalid_base_ref_raises(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    manager = WorkspaceManager(repo, "run1")

    with pytest.raises(WorkspaceError, match="worktree add failed"):
        manager.create("US-001", "job1", "does-not-exist")
