"""Thread-safe coordination of git operations on the root repository.

Git is not designed for concurrent operations against one repository. Worktree
creation, branch deletion and merges all touch the shared `.git` directory, so
they go through one process-wide lock. Merges additionally take a per-target
lock so no two merges into the same branch interleave.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class GitCoordinator:
    """Serialize git operations across job threads."""

    _instance: Optional[GitCoordinator] = None
    _lock = threading.Lock()

    def __new__(cls) -> GitCoordinator:
        """Singleton pattern to ensure one coordinator per process."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._git_lock = threading.RLock()
                    instance._target_locks = {}
                    instance._target_locks_guard = threading.Lock()
                    cls._instance = instance
        return cls._instance

    def execute_git_operation(
        self,
        operation: Callable[[], T],
        operation_name: str = "git operation",
    ) -> T:
        """Execute a git operation with the global lock held.

        Args:
            operation: Function that performs the git operation.
            operation_name: Name of the operation for logging.

        Returns:
            Result of the operation.
        """
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for git lock ({})", thread_id, operation_name)
        with self._git_lock:
            logger.debug("Thread {} acquired git lock ({})", thread_id, operation_name)
            try:
                return operation()
            except Exception as e:
                logger.error("Thread {} git operation failed ({}): {}", thread_id, operation_name, e)
                raise
            finally:
                logger.debug("Thread {} releasing git lock ({})", thread_id, operation_name)

    def target_lock(self, target: str) -> threading.Lock:
        """Return the lock that serializes merges into `target`."""
        with self._target_locks_guard:
            lock = self._target_locks.get(target)
            if lock is None:
                lock = threading.Lock()
                self._target_locks[target] = lock
            return lock


def get_git_coordinator() -> GitCoordinator:
    return GitCoordinator()
