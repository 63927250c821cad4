"""Run-level mutual exclusion with dead-owner recovery.

The lock is a directory created with an atomic ``mkdir``. It holds two small
files, ``pid`` and ``created_at``, identifying the owner. A lock is reclaimed
only when its owner is gone *and* it is older than the staleness threshold.
"""

from __future__ import annotations

import atexit
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from filelock import FileLock
from loguru import logger

from .constants import (
    DEFAULT_LOCK_STALE_MINUTES,
    LOCK_CREATED_AT_FILE,
    LOCK_PID_FILE,
    LOCKS_DIR_NAME,
    PARALLEL_LOCK_NAME,
    STATE_DIR_NAME,
)
from .utils import _parse_iso, _pid_is_running


@dataclass(frozen=True)
class LockInfo:
    pid: Optional[int]
    created_at: Optional[datetime]
    raw_created_at: str = ""

    def describe(self) -> str:
        pid = self.pid if self.pid is not None else "unknown"
        created = self.raw_created_at or "unknown"
        return f"pid={pid} created_at={created}"


class LockUnavailableError(RuntimeError):
    """Raised when another live run holds the lock."""

    def __init__(self, lock_dir: Path, info: LockInfo):
        self.lock_dir = lock_dir
        self.info = info
        super().__init__(
            f"Another parallel run holds the lock at {lock_dir} ({info.describe()}). "
            f"If you are sure no run is active, remove it: rm -rf {lock_dir}"
        )


class StalenessPolicy:
    """Decide whether a lock may be reclaimed.

    Both conditions must hold: the owner process is not alive, and the lock is
    at least `threshold` old. A lock with an unreadable pid or timestamp is
    never considered stale.
    """

    def __init__(
        self,
        threshold_minutes: float = DEFAULT_LOCK_STALE_MINUTES,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        is_alive: Callable[[Optional[int]], bool] = _pid_is_running,
    ):
        self.threshold = timedelta(minutes=threshold_minutes)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._is_alive = is_alive

    def now(self) -> datetime:
        return self._clock()

    def age(self, info: LockInfo) -> Optional[timedelta]:
        if info.created_at is None:
            return None
        return self.now() - info.created_at

    def is_stale(self, info: LockInfo) -> bool:
        if info.pid is None or info.created_at is None:
            return False
        if self._is_alive(info.pid):
            return False
        age = self.age(info)
        return age is not None and age >= self.threshold


def read_lock_info(lock_dir: Path) -> LockInfo:
    pid: Optional[int] = None
    raw_created = ""
    try:
        pid_text = (lock_dir / LOCK_PID_FILE).read_text().strip()
        pid = int(pid_text) if pid_text else None
    except (OSError, ValueError):
        pid = None
    try:
        raw_created = (lock_dir / LOCK_CREATED_AT_FILE).read_text().strip()
    except OSError:
        raw_created = ""
    return LockInfo(pid=pid, created_at=_parse_iso(raw_created), raw_created_at=raw_created)


class RunLock:
    """Exclusive lock guarding one parallel run per repository root."""

    def __init__(
        self,
        project_dir: Path,
        policy: Optional[StalenessPolicy] = None,
        *,
        lock_dir: Optional[Path] = None,
        pid: Optional[int] = None,
    ):
        self.project_dir = project_dir
        self.lock_dir = lock_dir or (
            project_dir / STATE_DIR_NAME / LOCKS_DIR_NAME / PARALLEL_LOCK_NAME
        )
        self.policy = policy or StalenessPolicy()
        self.pid = pid if pid is not None else os.getpid()
        self.held = False

    def _try_create(self) -> bool:
        self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.mkdir(self.lock_dir)
        except FileExistsError:
            return False
        created_at = self.policy.now().astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        (self.lock_dir / LOCK_PID_FILE).write_text(f"{self.pid}\n")
        (self.lock_dir / LOCK_CREATED_AT_FILE).write_text(f"{created_at}\n")
        return True

    @property
    def reclaim_path(self) -> Path:
        return self.lock_dir.with_name(f"{self.lock_dir.name}.reclaim")

    def acquire(self) -> None:
        """Acquire the lock or raise `LockUnavailableError`.

        A stale lock is removed and creation is retried exactly once. Removal
        happens under a file lock on `reclaim_path`, and only if the lock on
        disk still carries the pid and timestamp that were judged stale.
        """
        if self.held:
            return
        if not self._try_create():
            self._reclaim_stale()
        self.held = True
        atexit.register(self.release)
        logger.debug("Acquired run lock {}", self.lock_dir)

    def _reclaim_stale(self) -> None:
        info = read_lock_info(self.lock_dir)
        if not self.policy.is_stale(info):
            raise LockUnavailableError(self.lock_dir, info)
        with FileLock(str(self.reclaim_path)):
            current = read_lock_info(self.lock_dir)
            if current != info:
                # Released or reclaimed by someone else since it was read.
                if self._try_create():
                    return
                raise LockUnavailableError(self.lock_dir, current)
            logger.warning("Reclaiming stale lock at {} ({})", self.lock_dir, info.describe())
            shutil.rmtree(self.lock_dir, ignore_errors=True)
            if not self._try_create():
                raise LockUnavailableError(self.lock_dir, read_lock_info(self.lock_dir))

    def release(self) -> None:
        if not self.held:
            return
        self.held = False
        atexit.unregister(self.release)
        info = read_lock_info(self.lock_dir)
        if info.pid is not None and info.pid != self.pid:
            logger.warning("Lock at {} now belongs to pid {}; leaving it", self.lock_dir, info.pid)
            return
        shutil.rmtree(self.lock_dir, ignore_errors=True)
        logger.debug("Released run lock {}", self.lock_dir)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
