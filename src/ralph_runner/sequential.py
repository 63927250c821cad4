"""Drive one work item at a time through a worker, applying retry policy.

Each attempt starts a fresh worker. Progress survives only in the repository
and the store, so a rotated worker rebuilds its context from those files.
"""

from __future__ import annotations

import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .config import RunnerConfig
from .constants import EXIT_INCOMPLETE, EXIT_OK, EXIT_STUCK
from .git_utils import _ensure_branch, _git_commit_all, _git_has_changes, _open_pull_request
from .ledger import ProgressLedger
from .models import InvocationResult, LoopResult, SignalKind, WorkItem
from .prompts import build_item_prompt
from .state import PrerequisiteError, state_dir
from .store import WorkItemStore
from .utils import backoff_delay
from .worker import AgentProcessWorker, Worker, WorkRequest


class ItemState(str, Enum):
    ATTEMPTING = "attempting"
    DONE = "done"
    ROTATING = "rotating"
    DEFERRED = "deferred"
    STUCK = "stuck"
    EXHAUSTED = "exhausted"


class StuckError(RuntimeError):
    """Raised when a worker reports GUTTER; the loop must stop."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Worker is stuck on {item_id}; operator intervention required")


class SequentialRunner:
    def __init__(
        self,
        project_dir: Path,
        config: RunnerConfig,
        *,
        store: Optional[WorkItemStore] = None,
        ledger: Optional[ProgressLedger] = None,
        worker: Optional[Worker] = None,
        sleep: Callable[[float], None] = time.sleep,
        branch: Optional[str] = None,
        open_pr: bool = False,
        commit_first: bool = True,
    ):
        self.project_dir = project_dir.resolve()
        self.config = config
        self.store = store or WorkItemStore.for_project(self.project_dir, config.work_items_file)
        self.ledger = ledger or ProgressLedger(self.project_dir / config.progress_file)
        self.worker = worker or AgentProcessWorker.from_config(config)
        self.sleep = sleep
        self.branch = branch
        self.open_pr = open_pr
        self.commit_first = commit_first
        self.invocations = 0

    def _request(self, item: WorkItem, attempt: int) -> WorkRequest:
        stamp = time.strftime("%Y%m%d-%H%M%S")
        log_path = state_dir(self.project_dir) / "runs" / f"{stamp}-{item.id}-a{attempt}.log"
        return WorkRequest(
            work_item=item,
            workspace=self.project_dir,
            prompt=build_item_prompt(item, self.config.work_items_file, self.config.progress_file),
            log_path=log_path,
            model=self.config.model,
            stop_on_interrupt_signals=True,
        )

    def _record_completion(self, item_id: str, summary: str) -> None:
        self.store.mark_complete(item_id)
        self.ledger.append_once(item_id, summary)

    def apply_signal(self, item: WorkItem, result: InvocationResult, attempt: int) -> ItemState:
        """Apply one invocation's signal to the store and return the item's next state."""
        signal = result.signal
        kind = signal.kind
        if kind is SignalKind.US_DONE:
            reported = signal.work_item_id
            if reported == item.id:
                self._record_completion(item.id, f"{item.title or item.id} (attempt {attempt})")
                return ItemState.DONE
            if reported and self.store.find(reported) is not None:
                logger.warning("Worker on {} reported {} as done instead", item.id, reported)
                self._record_completion(reported, "reported done by another item's worker")
            else:
                logger.warning("Worker on {} reported unknown item {!r}", item.id, reported)
            return ItemState.ATTEMPTING
        if kind is SignalKind.COMPLETE:
            self._record_completion(item.id, f"{item.title or item.id} (attempt {attempt})")
            return ItemState.DONE
        if kind is SignalKind.ROTATE:
            return ItemState.ROTATING
        if kind is SignalKind.GUTTER:
            return ItemState.STUCK
        if kind is SignalKind.DEFER:
            return ItemState.DEFERRED
        return ItemState.ATTEMPTING

    def run_item(self, item: WorkItem) -> ItemState:
        """Attempt one item until it is done or its attempt budget is spent.

        Raises:
            StuckError: If the worker reports GUTTER.
        """
        max_attempts = self.config.max_attempts
        attempt = 0
        while attempt < max_attempts:
            current = self.store.find(item.id)
            if current is not None and current.passes:
                return ItemState.DONE
            attempt += 1
            logger.info("{} attempt {}/{}: {}", item.id, attempt, max_attempts, item.title)
            result = self.worker.invoke(self._request(item, attempt))
            self.invocations += 1
            state = self.apply_signal(item, result, attempt)

            if state is ItemState.DONE:
                logger.success("{} complete", item.id)
                return state
            if state is ItemState.STUCK:
                raise StuckError(item.id)
            if state is ItemState.DEFERRED:
                if attempt < max_attempts:
                    delay = backoff_delay(
                        attempt, self.config.backoff_base_seconds, self.config.backoff_max_seconds
                    )
                    logger.warning("{} deferred; backing off {:.0f}s", item.id, delay)
                    self.sleep(delay)
                continue
            if state is ItemState.ROTATING:
                logger.info("{} rotating to a fresh worker", item.id)
            else:
                logger.warning("{} finished without completing ({})", item.id, result.signal)
            if attempt < max_attempts:
                self.sleep(self.config.retry_pause_seconds)

        logger.error("{} exhausted {} attempts; moving on", item.id, max_attempts)
        return ItemState.EXHAUSTED

    def prepare(self) -> None:
        if self.commit_first and _git_has_changes(self.project_dir):
            logger.info("Committing pending changes before the loop")
            _git_commit_all(self.project_dir, "ralph: initial commit before loop")
        if self.branch and not _ensure_branch(self.project_dir, self.branch):
            raise PrerequisiteError(f"Unable to check out branch {self.branch}")

    def run(self) -> LoopResult:
        self.prepare()
        result = LoopResult(exit_code=EXIT_INCOMPLETE)
        skipped: set[str] = set()
        while not self.store.is_complete():
            item = self.store.next_incomplete(exclude=skipped)
            if item is None:
                break
            try:
                state = self.run_item(item)
            except StuckError as exc:
                logger.error("{}", exc)
                result.exit_code = EXIT_STUCK
                result.stuck_on = exc.item_id
                result.invocations = self.invocations
                return result
            if state is ItemState.DONE:
                result.completed.append(item.id)
            else:
                skipped.add(item.id)
                result.skipped.append(item.id)

        result.invocations = self.invocations
        if self.store.is_complete():
            result.exit_code = EXIT_OK
            logger.success("All work items complete")
            if self.open_pr and self.branch:
                _open_pull_request(self.project_dir, self.branch)
        else:
            logger.warning("Loop finished with incomplete items: {}", ", ".join(result.skipped) or "-")
        return result

    def run_once(self) -> tuple[Optional[WorkItem], Optional[InvocationResult], ItemState]:
        """Invoke the worker once on the next incomplete item, without retrying."""
        item = self.store.next_incomplete()
        if item is None:
            return None, None, ItemState.DONE
        result = self.worker.invoke(self._request(item, 1))
        self.invocations += 1
        return item, result, self.apply_signal(item, result, 1)
