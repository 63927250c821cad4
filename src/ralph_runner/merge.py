"""Integrate job branches into a target branch, one merge at a time."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from .git_coordinator import GitCoordinator, get_git_coordinator
from .git_utils import _git, _git_conflicted_files, _git_rev_parse, _identity_args
from .models import MergeOutcome


@dataclass(frozen=True)
class MergeResult:
    outcome: MergeOutcome
    branch: str
    target: str
    conflicted_files: list[str] = field(default_factory=list)
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is MergeOutcome.SUCCESS


class MergeReconciler:
    """Merge branches with `--no-ff`; conflicts are aborted, never resolved."""

    def __init__(self, project_dir: Path, coordinator: Optional[GitCoordinator] = None):
        self.project_dir = project_dir.resolve()
        self.coordinator = coordinator or get_git_coordinator()

    def _restore(self, before: Optional[str]) -> None:
        _git(self.project_dir, "merge", "--abort")
        after = _git_rev_parse(self.project_dir, "HEAD")
        if before and after != before:
            logger.warning("Target moved during failed merge; resetting to {}", before[:12])
            _git(self.project_dir, "reset", "--merge", before)

    def _integrate(self, branch: str, target: str) -> MergeResult:
        checkout = _git(self.project_dir, "checkout", target)
        if checkout.returncode != 0:
            return MergeResult(
                MergeOutcome.ERROR, branch, target, detail=f"checkout failed: {checkout.stderr.strip()}"
            )
        before = _git_rev_parse(self.project_dir, "HEAD")
        merge = _git(
            self.project_dir,
            *_identity_args(self.project_dir),
            "merge",
            "--no-ff",
            "-m",
            f"Merge {branch} into {target}",
            branch,
        )
        if merge.returncode == 0:
            return MergeResult(MergeOutcome.SUCCESS, branch, target)

        detail = (merge.stderr or merge.stdout).strip()
        conflicts = _git_conflicted_files(self.project_dir)
        self._restore(before)
        if conflicts:
            return MergeResult(MergeOutcome.CONFLICT, branch, target, conflicts, detail)
        return MergeResult(MergeOutcome.ERROR, branch, target, detail=detail)

    def integrate(self, branch: str, target: str) -> MergeResult:
        """Merge `branch` into `target`.

        On conflict or error the merge is aborted, `target` is left as it was
        and `branch` is untouched.
        """
        with self.coordinator.target_lock(target):
            result = self.coordinator.execute_git_operation(
                lambda: self._integrate(branch, target), f"merge {branch}"
            )
        if result.outcome is MergeOutcome.SUCCESS:
            logger.info("Merged {} into {}", branch, target)
        elif result.outcome is MergeOutcome.CONFLICT:
            logger.warning(
                "Conflict merging {} into {} ({}); branch preserved",
                branch,
                target,
                ", ".join(result.conflicted_files),
            )
        else:
            logger.error("Failed to merge {} into {}: {}", branch, target, result.detail)
        return result
