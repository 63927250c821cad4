"""Prepare the `.ralph/` state directory and verify run prerequisites."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import (
    ACTIVITY_LOG_FILE,
    ERRORS_LOG_FILE,
    GUARDRAILS_FILE,
    GUARDRAILS_TEMPLATE,
    STATE_DIR_NAME,
    WORKTREE_BASE_DIR_NAME,
)
from .git_utils import _ensure_git_excludes, _git_is_repo
from .store import WorkItemStore, WorkItemStoreError


class PrerequisiteError(RuntimeError):
    """Raised when a run cannot start."""


def state_dir(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME


def ensure_state_dir(project_dir: Path) -> Path:
    """Create `.ralph/` with its guardrails and log files if they are missing."""
    path = state_dir(project_dir)
    path.mkdir(parents=True, exist_ok=True)
    guardrails = path / GUARDRAILS_FILE
    if not guardrails.exists():
        guardrails.write_text(GUARDRAILS_TEMPLATE, encoding="utf-8")
    for name in (ERRORS_LOG_FILE, ACTIVITY_LOG_FILE):
        (path / name).touch(exist_ok=True)
    if _git_is_repo(project_dir):
        _ensure_git_excludes(project_dir, [f"{STATE_DIR_NAME}/", f"{WORKTREE_BASE_DIR_NAME}/"])
    return path


def check_prerequisites(
    project_dir: Path,
    store: WorkItemStore,
    *,
    worker_executable: Optional[str] = None,
    require_git: bool = True,
) -> None:
    """Fail before any worker runs if the environment cannot support a run.

    Raises:
        PrerequisiteError: With every problem found, one per line.
    """
    problems: list[str] = []
    if require_git and not _git_is_repo(project_dir):
        problems.append(f"{project_dir} is not a git repository")
    try:
        store.validate()
    except WorkItemStoreError as exc:
        problems.append(str(exc))
    if worker_executable is not None and shutil.which(worker_executable) is None:
        problems.append(f"Worker executable not found on PATH: {worker_executable}")
    if problems:
        for problem in problems:
            logger.error(problem)
        raise PrerequisiteError("\n".join(problems))
