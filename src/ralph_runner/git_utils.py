"""Provide small git and gh helpers used by the runners.

Helpers never raise on a non-zero git exit; they return `None`, `False` or the
completed process so callers decide what a failure means.
"""

from __future__ import annotations

import fnmatch
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import MERGE_FALLBACK_EMAIL, MERGE_FALLBACK_NAME


def _git(project_dir: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )


def _git_is_repo(project_dir: Path) -> bool:
    result = _git(project_dir, "rev-parse", "--is-inside-work-tree")
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_common_dir(project_dir: Path) -> Optional[Path]:
    result = _git(project_dir, "rev-parse", "--git-common-dir")
    if result.returncode != 0 or not result.stdout.strip():
        return None
    path = Path(result.stdout.strip())
    if not path.is_absolute():
        path = project_dir / path
    return path.resolve()


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_rev_parse(project_dir: Path, ref: str = "HEAD") -> Optional[str]:
    result = _git(project_dir, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    return _git(project_dir, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}").returncode == 0


def _ensure_branch(project_dir: Path, branch: str) -> bool:
    current = _git_current_branch(project_dir)
    if current == branch:
        return True
    if _git_branch_exists(project_dir, branch):
        result = _git(project_dir, "checkout", branch)
    else:
        result = _git(project_dir, "checkout", "-b", branch)
    if result.returncode != 0:
        logger.error("Unable to switch to branch {}: {}", branch, result.stderr.strip())
        return False
    return True


def _git_reset_branch(project_dir: Path, branch: str, start_point: str) -> bool:
    """Create or reset `branch` at `start_point` and check it out."""
    result = _git(project_dir, "checkout", "-B", branch, start_point)
    if result.returncode != 0:
        logger.error("Unable to reset {} to {}: {}", branch, start_point[:12], result.stderr.strip())
        return False
    return True


def _git_status_paths(project_dir: Path) -> list[str]:
    """Paths reported by `git status --porcelain` (untracked included)."""
    result = _git(project_dir, "status", "--porcelain", "--untracked-files=all")
    if result.returncode != 0:
        return []
    paths = []
    for line in result.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip().strip('"'))
    return paths


def _git_has_changes(project_dir: Path, ignore_patterns: Optional[list[str]] = None) -> bool:
    return any(
        not _path_is_ignored(path, ignore_patterns) for path in _git_status_paths(project_dir)
    )


def _path_is_ignored(path: str, ignore_patterns: Optional[list[str]] = None) -> bool:
    if not ignore_patterns:
        return False
    for pattern in ignore_patterns:
        pattern = pattern.strip()
        if not pattern:
            continue
        if any(char in pattern for char in "*?["):
            if fnmatch.fnmatch(path, pattern):
                return True
            continue
        normalized = pattern.rstrip("/")
        if pattern.endswith("/"):
            prefix = f"{normalized}/"
            if path == normalized or path.startswith(prefix):
                return True
        else:
            if path == normalized:
                return True
    return False


def _exclude_file_has_entry(path: Path, entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return entry.strip().rstrip("/") in lines


def _ensure_git_excludes(project_dir: Path, entries: list[str]) -> None:
    """Add entries to the repository's shared `info/exclude`.

    Unlike `.gitignore`, this never dirties the tree, and linked worktrees
    read the same file.
    """
    common_dir = _git_common_dir(project_dir)
    if common_dir is None:
        return
    exclude_path = common_dir / "info" / "exclude"
    try:
        contents = exclude_path.read_text() if exclude_path.exists() else ""
        for entry in entries:
            if _exclude_file_has_entry(exclude_path, entry):
                continue
            if contents and not contents.endswith("\n"):
                contents += "\n"
            contents += entry + "\n"
            exclude_path.parent.mkdir(parents=True, exist_ok=True)
            exclude_path.write_text(contents)
    except OSError as exc:
        logger.warning("Unable to update {}: {}", exclude_path, exc)


def _git_has_identity(project_dir: Path) -> bool:
    name = _git(project_dir, "config", "user.name")
    email = _git(project_dir, "config", "user.email")
    return bool(name.stdout.strip()) and bool(email.stdout.strip())


def _identity_args(project_dir: Path) -> list[str]:
    if _git_has_identity(project_dir):
        return []
    return ["-c", f"user.name={MERGE_FALLBACK_NAME}", "-c", f"user.email={MERGE_FALLBACK_EMAIL}"]


def _git_commit_all(project_dir: Path, message: str) -> bool:
    add = _git(project_dir, "add", "-A")
    if add.returncode != 0:
        logger.error("git add failed: {}", add.stderr.strip())
        return False
    commit = _git(project_dir, *_identity_args(project_dir), "commit", "-m", message)
    if commit.returncode != 0:
        logger.error("git commit failed: {}", (commit.stderr or commit.stdout).strip())
        return False
    return True


def _git_commit_paths(project_dir: Path, paths: list[str], message: str, body: str = "") -> bool:
    """Commit only `paths`; returns False when there was nothing to commit."""
    existing = [path for path in paths if (project_dir / path).exists()]
    if not existing:
        return False
    add = _git(project_dir, "add", "--", *existing)
    if add.returncode != 0:
        logger.error("git add failed: {}", add.stderr.strip())
        return False
    staged = _git(project_dir, "diff", "--cached", "--quiet", "--", *existing)
    if staged.returncode == 0:
        return False
    args = [*_identity_args(project_dir), "commit", "-m", message]
    if body:
        args.extend(["-m", body])
    args.extend(["--", *existing])
    commit = _git(project_dir, *args)
    if commit.returncode != 0:
        logger.error("git commit failed: {}", (commit.stderr or commit.stdout).strip())
        return False
    return True


def _git_rev_list_count(project_dir: Path, head: str, base: str) -> int:
    result = _git(project_dir, "rev-list", "--count", head, f"^{base}")
    if result.returncode != 0:
        return 0
    try:
        return int(result.stdout.strip() or 0)
    except ValueError:
        return 0


def _git_conflicted_files(project_dir: Path) -> list[str]:
    result = _git(project_dir, "diff", "--name-only", "--diff-filter=U")
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_delete_branch(project_dir: Path, branch: str) -> bool:
    result = _git(project_dir, "branch", "-D", branch)
    if result.returncode != 0:
        logger.debug("Could not delete branch {}: {}", branch, result.stderr.strip())
        return False
    return True


def _git_has_remote(project_dir: Path, remote: str = "origin") -> bool:
    return _git(project_dir, "remote", "get-url", remote).returncode == 0


def _git_push(project_dir: Path, branch: str, remote: str = "origin") -> bool:
    result = _git(project_dir, "push", "-u", remote, branch)
    if result.returncode != 0:
        logger.error("git push {} {} failed: {}", remote, branch, result.stderr.strip())
        return False
    return True


def _open_pull_request(project_dir: Path, head: str, base: Optional[str] = None) -> bool:
    """Push `head` and open a pull request with `gh pr create --fill`."""
    if not _git_has_remote(project_dir):
        logger.warning("No 'origin' remote; skipping pull request for {}", head)
        return False
    if not _git_push(project_dir, head):
        return False
    if shutil.which("gh") is None:
        logger.warning("gh CLI not found; branch {} pushed but no pull request opened", head)
        return False
    command = ["gh", "pr", "create", "--head", head, "--fill"]
    if base:
        command.extend(["--base", base])
    result = subprocess.run(
        command,
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        logger.error("gh pr create failed: {}", (result.stderr or result.stdout).strip())
        return False
    logger.info("Opened pull request: {}", result.stdout.strip())
    return True
