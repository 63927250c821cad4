"""Isolated, branch-scoped checkouts (git worktrees) for concurrent jobs."""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import BRANCH_PREFIX, STATE_DIR_NAME, WORKTREE_BASE_DIR_NAME
from .git_coordinator import GitCoordinator, get_git_coordinator
from .git_utils import _git, _git_delete_branch, _git_has_changes
from .models import CleanupResult
from .utils import slugify


class WorkspaceError(RuntimeError):
    """Raised when an isolated workspace cannot be created."""


class NestedWorkspaceError(WorkspaceError):
    """Raised when the root is itself a linked worktree."""


@dataclass(frozen=True)
class Workspace:
    path: Path
    branch: str
    job_id: str
    work_item_id: str
    seeded: tuple[str, ...] = ()


def check_can_use_worktrees(project_dir: Path) -> None:
    """Refuse to operate from a repository that is not a primary checkout.

    A linked worktree has a `.git` *file* pointing at the main repository.
    """
    git_path = project_dir / ".git"
    if git_path.is_file():
        raise NestedWorkspaceError(
            f"{project_dir} is itself a git worktree; run from the main checkout instead"
        )
    if not git_path.is_dir():
        raise WorkspaceError(f"{project_dir} is not a git repository (no .git directory)")


def _ref_safe(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.") or "item"


class WorkspaceManager:
    """Create and dispose of one worktree per job within a run."""

    def __init__(
        self,
        project_dir: Path,
        run_id: str,
        *,
        base_dir: Optional[Path] = None,
        coordinator: Optional[GitCoordinator] = None,
    ):
        self.project_dir = project_dir.resolve()
        check_can_use_worktrees(self.project_dir)
        self.run_id = run_id
        self.base_dir = base_dir or (self.project_dir / WORKTREE_BASE_DIR_NAME)
        self.coordinator = coordinator or get_git_coordinator()

    def branch_name(self, job_id: str, work_item_id: str, title: str = "") -> str:
        name = f"{BRANCH_PREFIX}-{self.run_id}-{job_id}-{_ref_safe(work_item_id)}"
        slug = slugify(title)
        return f"{name}-{slug}" if slug else name

    def workspace_path(self, job_id: str) -> Path:
        return self.base_dir / f"{self.run_id}-{job_id}"

    def create(
        self,
        work_item_id: str,
        job_id: str,
        base_ref: str,
        title: str = "",
    ) -> Workspace:
        """Check out `base_ref` into a fresh worktree on a new branch.

        Any leftover directory at the same path is destroyed first.

        Raises:
            WorkspaceError: If git refuses to create the worktree.
        """
        path = self.workspace_path(job_id)
        branch = self.branch_name(job_id, work_item_id, title)

        def _create() -> None:
            if path.exists():
                logger.warning("Removing stale workspace at {}", path)
                _git(self.project_dir, "worktree", "remove", "--force", str(path))
                shutil.rmtree(path, ignore_errors=True)
            _git(self.project_dir, "worktree", "prune")
            self.base_dir.mkdir(parents=True, exist_ok=True)
            result = _git(self.project_dir, "worktree", "add", "-B", branch, str(path), base_ref)
            if result.returncode != 0:
                raise WorkspaceError(
                    f"git worktree add failed for {job_id} ({work_item_id}): {result.stderr.strip()}"
                )

        self.coordinator.execute_git_operation(_create, f"worktree add {job_id}")
        logger.info("Created workspace {} on {}", path, branch)
        return Workspace(path=path, branch=branch, job_id=job_id, work_item_id=work_item_id)

    def seed(self, workspace: Workspace, relative_paths: list[str]) -> Workspace:
        """Copy shared artifacts from the root into the workspace."""
        seeded = list(workspace.seeded)
        for rel in relative_paths:
            source = self.project_dir / rel
            if not source.is_file():
                continue
            dest = workspace.path / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
            seeded.append(rel)
        return Workspace(
            path=workspace.path,
            branch=workspace.branch,
            job_id=workspace.job_id,
            work_item_id=workspace.work_item_id,
            seeded=tuple(seeded),
        )

    def is_dirty(self, workspace: Workspace) -> bool:
        ignore = [f"{STATE_DIR_NAME}/", *workspace.seeded]
        return _git_has_changes(workspace.path, ignore_patterns=ignore)

    def cleanup(self, workspace: Workspace) -> CleanupResult:
        """Remove the worktree unless it holds uncommitted work."""
        if not workspace.path.exists():
            self.coordinator.execute_git_operation(
                lambda: _git(self.project_dir, "worktree", "prune"), "worktree prune"
            )
            return CleanupResult.CLEANED
        if self.is_dirty(workspace):
            logger.warning(
                "Workspace {} has uncommitted changes; leaving it in place", workspace.path
            )
            return CleanupResult.LEFT_IN_PLACE

        def _remove() -> None:
            result = _git(self.project_dir, "worktree", "remove", "--force", str(workspace.path))
            if result.returncode != 0:
                logger.warning(
                    "git worktree remove failed for {}: {}", workspace.path, result.stderr.strip()
                )
                shutil.rmtree(workspace.path, ignore_errors=True)
                _git(self.project_dir, "worktree", "prune")

        self.coordinator.execute_git_operation(_remove, f"worktree remove {workspace.job_id}")
        return CleanupResult.CLEANED

    def delete_branch(self, branch: str) -> bool:
        return self.coordinator.execute_git_operation(
            lambda: _git_delete_branch(self.project_dir, branch), f"branch -D {branch}"
        )


def cleanup_all_worktrees(project_dir: Path) -> tuple[list[Path], list[Path]]:
    """Remove every clean worktree under the workspace base directory.

    Returns:
        `(removed, kept)`; kept worktrees still hold uncommitted changes.
    """
    project_dir = project_dir.resolve()
    base_dir = project_dir / WORKTREE_BASE_DIR_NAME
    removed: list[Path] = []
    kept: list[Path] = []
    if base_dir.is_dir():
        for path in sorted(p for p in base_dir.iterdir() if p.is_dir()):
            if _git_has_changes(path, ignore_patterns=[f"{STATE_DIR_NAME}/"]):
                kept.append(path)
                continue
            result = _git(project_dir, "worktree", "remove", "--force", str(path))
            if result.returncode != 0:
                shutil.rmtree(path, ignore_errors=True)
            removed.append(path)
    _git(project_dir, "worktree", "prune")
    return removed, kept
