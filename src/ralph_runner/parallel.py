"""Run many work items concurrently in isolated worktrees, then merge the results.

Items are processed in batches of at most `concurrency` jobs. A batch is a
barrier: every job reaches a terminal state before its successful branches
are merged, and no job of the next batch starts before that.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import RunnerConfig
from .constants import (
    ERRORS_LOG_FILE,
    EXIT_INCOMPLETE,
    EXIT_OK,
    GUARDRAILS_FILE,
    MANIFEST_FILE,
    PARALLEL_STATE_DIR_NAME,
    STATE_DIR_NAME,
)
from .git_utils import (
    _git_current_branch,
    _git_commit_paths,
    _git_reset_branch,
    _git_rev_list_count,
    _git_rev_parse,
    _git_status_paths,
    _open_pull_request,
)
from .io_utils import _atomic_write_text, _read_text_tail
from .ledger import ManifestWriter, ProgressLedger
from .locking import RunLock, StalenessPolicy
from .merge import MergeReconciler
from .models import (
    CleanupResult,
    Job,
    JobOutcome,
    JobStatus,
    ManifestPhase,
    MergeOutcome,
    RunSummary,
    WorkItem,
)
from .prompts import build_parallel_prompt
from .state import ensure_state_dir, state_dir
from .store import WorkItemStore
from .utils import new_run_id
from .worker import AgentProcessWorker, Worker, WorkRequest
from .workspaces import Workspace, WorkspaceError, WorkspaceManager


_OUTCOME_COLORS = {JobOutcome.SUCCESS: "green", JobOutcome.NO_COMMITS: "yellow"}


class RunAbortedError(RuntimeError):
    """Raised when a parallel run cannot start."""


def plan_batches(items: list[WorkItem], concurrency: int) -> list[list[WorkItem]]:
    """Split ordered items into consecutive batches of at most `concurrency`."""
    size = max(1, concurrency)
    return [items[i : i + size] for i in range(0, len(items), size)]


class ParallelScheduler:
    """Coordinate one parallel run against a repository root."""

    def __init__(
        self,
        project_dir: Path,
        config: RunnerConfig,
        *,
        worker: Optional[Worker] = None,
        store: Optional[WorkItemStore] = None,
        ledger: Optional[ProgressLedger] = None,
        policy: Optional[StalenessPolicy] = None,
        console: Optional[Console] = None,
        run_id: Optional[str] = None,
    ):
        self.project_dir = project_dir.resolve()
        self.config = config
        self.worker = worker or AgentProcessWorker.from_config(config)
        self.store = store or WorkItemStore.for_project(self.project_dir, config.work_items_file)
        self.ledger = ledger or ProgressLedger(self.project_dir / config.progress_file)
        self.policy = policy or StalenessPolicy(config.lock_stale_minutes)
        self.console = console or Console()
        self.run_id = run_id or new_run_id()
        self.run_dir = state_dir(self.project_dir) / PARALLEL_STATE_DIR_NAME / self.run_id
        self.manifest = ManifestWriter(self.run_dir / MANIFEST_FILE)
        self.reconciler = MergeReconciler(self.project_dir)
        self._lock = threading.Lock()
        self._job_counter = 0

    # ------------------------------------------------------------------
    # job execution
    # ------------------------------------------------------------------

    def _status_path(self, job: Job) -> Path:
        return self.run_dir / f"{job.job_id}.status"

    def _set_status(self, job: Job, status: JobStatus) -> None:
        with self._lock:
            job.status = status
        _atomic_write_text(self._status_path(job), status.value + "\n")

    def _seed_paths(self) -> list[str]:
        return [
            self.config.work_items_file,
            self.config.progress_file,
            f"{STATE_DIR_NAME}/{GUARDRAILS_FILE}",
            f"{STATE_DIR_NAME}/{ERRORS_LOG_FILE}",
        ]

    def _report_path(self, job: Job) -> str:
        return f"{STATE_DIR_NAME}/{PARALLEL_STATE_DIR_NAME}/{self.run_id}/agent-{job.job_id}.md"

    def _run_job(self, job: Job, base_sha: str, agent_number: int) -> Job:
        self._set_status(job, JobStatus.RUNNING)
        (job.workspace / self._report_path(job)).parent.mkdir(parents=True, exist_ok=True)
        request = WorkRequest(
            work_item=job.work_item,
            workspace=job.workspace,
            prompt=build_parallel_prompt(
                job.work_item,
                self.config.work_items_file,
                self.config.progress_file,
                job_id=job.job_id,
                agent_number=agent_number,
                report_path=self._report_path(job),
            ),
            log_path=job.log_path,
            model=self.config.model,
            stop_on_interrupt_signals=False,
            job_id=job.job_id,
        )
        try:
            result = self.worker.invoke(request)
        except Exception as exc:
            logger.exception("{} ({}) crashed", job.job_id, job.work_item_id)
            job.error = f"{exc.__class__.__name__}: {exc}"
            job.outcome = JobOutcome.ERROR
            self._set_status(job, JobStatus.FAILED)
            return job

        job.signal = result.signal
        if result.failed:
            job.error = result.launch_error or f"worker exited with code {result.exit_code}"
            job.outcome = JobOutcome.ERROR
            self._set_status(job, JobStatus.FAILED)
            return job

        job.commit_count = _git_rev_list_count(job.workspace, "HEAD", base_sha)
        job.outcome = JobOutcome.SUCCESS if job.commit_count > 0 else JobOutcome.NO_COMMITS
        self._set_status(job, JobStatus.DONE)
        return job

    def _counts(self, jobs: list[Job]) -> tuple[int, int, int]:
        with self._lock:
            running = sum(1 for job in jobs if job.status is JobStatus.RUNNING)
            done = sum(1 for job in jobs if job.status is JobStatus.DONE)
            failed = sum(1 for job in jobs if job.status is JobStatus.FAILED)
        return running, done, failed

    def _execute_batch(self, jobs: list[Job], base_sha: str) -> None:
        """Run jobs concurrently and block until every one is terminal."""
        runnable = [job for job in jobs if job.status is JobStatus.WAITING]
        if not runnable:
            return
        started = time.monotonic()
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=len(runnable), thread_name_prefix=f"ralph-{self.run_id}"
        ) as executor:
            futures = {
                executor.submit(self._run_job, job, base_sha, slot): job
                for slot, job in enumerate(runnable, start=1)
            }
            pending = set(futures)
            try:
                with self.console.status("Starting agents...") as status:
                    while pending:
                        _, pending = concurrent.futures.wait(
                            pending,
                            timeout=self.config.poll_interval_seconds,
                            return_when=concurrent.futures.FIRST_COMPLETED,
                        )
                        running, done, failed = self._counts(jobs)
                        elapsed = int(time.monotonic() - started)
                        status.update(
                            f"Running: {running} | Done: {done} | Failed: {failed} | "
                            f"{elapsed // 60:02d}:{elapsed % 60:02d}"
                        )
                for future, job in futures.items():
                    exc = future.exception()
                    if exc is None:
                        continue
                    # _run_job turns worker errors into outcomes; anything left is an interrupt.
                    if not isinstance(exc, Exception):
                        raise exc
                    logger.error("{} ({}) failed: {}", job.job_id, job.work_item_id, exc)
                    job.error = job.error or f"{exc.__class__.__name__}: {exc}"
            except BaseException:
                terminate_all = getattr(self.worker, "terminate_all", None)
                if callable(terminate_all):
                    terminate_all()
                raise

    # ------------------------------------------------------------------
    # batch lifecycle
    # ------------------------------------------------------------------

    def _record(self, phase: ManifestPhase, job: Job, status: str, base_sha: str) -> None:
        self.manifest.record(
            phase,
            run_id=self.run_id,
            job_id=job.job_id,
            work_item_id=job.work_item_id,
            branch=job.branch,
            status=status,
            base_sha=base_sha,
            log_file=str(job.log_path) if phase is not ManifestPhase.MERGE else "",
            workspace=str(job.workspace) if phase is not ManifestPhase.MERGE else "",
        )

    def _prepare_jobs(
        self,
        manager: WorkspaceManager,
        batch: list[WorkItem],
        base_sha: str,
    ) -> tuple[list[Job], dict[str, Workspace]]:
        jobs: list[Job] = []
        workspaces: dict[str, Workspace] = {}
        for item in batch:
            self._job_counter += 1
            job_id = f"job{self._job_counter}"
            log_path = self.run_dir / f"{job_id}.log"
            log_path.touch()
            try:
                workspace = manager.create(item.id, job_id, base_sha, item.title)
                workspace = manager.seed(workspace, self._seed_paths())
            except WorkspaceError as exc:
                logger.error("Could not create workspace for {}: {}", item.id, exc)
                job = Job(
                    job_id=job_id,
                    work_item=item,
                    branch=manager.branch_name(job_id, item.id, item.title),
                    workspace=manager.workspace_path(job_id),
                    log_path=log_path,
                    status=JobStatus.FAILED,
                    outcome=JobOutcome.ERROR,
                    error=str(exc),
                )
                self._record(ManifestPhase.START, job, "workspace_failed", base_sha)
                jobs.append(job)
                continue
            job = Job(
                job_id=job_id,
                work_item=item,
                branch=workspace.branch,
                workspace=workspace.path,
                log_path=log_path,
            )
            workspaces[job_id] = workspace
            self._set_status(job, JobStatus.WAITING)
            self._record(ManifestPhase.START, job, "starting", base_sha)
            jobs.append(job)
        return jobs, workspaces

    def _finish_jobs(
        self,
        manager: WorkspaceManager,
        jobs: list[Job],
        workspaces: dict[str, Workspace],
        base_sha: str,
        summary: RunSummary,
    ) -> list[Job]:
        """Release workspaces, record results and return the jobs worth merging."""
        mergeable: list[Job] = []
        for job in jobs:
            workspace = workspaces.get(job.job_id)
            job.cleanup = manager.cleanup(workspace) if workspace else CleanupResult.CLEANED
            outcome = job.outcome or JobOutcome.ERROR
            self._record(
                ManifestPhase.FINISH, job, f"{job.status.value}/{outcome.value}", base_sha
            )
            if job.cleanup is CleanupResult.LEFT_IN_PLACE:
                summary.preserved.append(str(job.workspace))

            if outcome is JobOutcome.SUCCESS:
                summary.succeeded.append(job.branch)
                mergeable.append(job)
            else:
                summary.failed.append(job.branch)
                if job.cleanup is CleanupResult.CLEANED and workspace is not None:
                    manager.delete_branch(job.branch)
                    self._record(ManifestPhase.BRANCH_CLEANUP, job, "deleted", base_sha)
            self._status_path(job).unlink(missing_ok=True)
        return mergeable

    def _merge_batch(
        self,
        manager: WorkspaceManager,
        jobs: list[Job],
        target: str,
        base_sha: str,
        batch_number: int,
        summary: RunSummary,
    ) -> list[Job]:
        integrated: list[Job] = []
        for job in jobs:
            result = self.reconciler.integrate(job.branch, target)
            if result.outcome is MergeOutcome.SUCCESS:
                self._record(ManifestPhase.MERGE, job, "merged", base_sha)
                integrated.append(job)
                if job.cleanup is not CleanupResult.LEFT_IN_PLACE:
                    manager.delete_branch(job.branch)
            elif result.outcome is MergeOutcome.CONFLICT:
                self._record(ManifestPhase.MERGE, job, "conflict", base_sha)
                summary.conflicted.append(job.branch)
            else:
                self._record(ManifestPhase.MERGE, job, "error", base_sha)
                summary.merge_errors.append(job.branch)

        for job in integrated:
            self.store.mark_complete(job.work_item_id)
            self.ledger.append_once(
                job.work_item_id, f"{job.work_item.title or job.work_item_id} (merged {job.branch})"
            )
            summary.integrated.append(job.work_item_id)

        if integrated:
            body_lines = [f"Run: {self.run_id}", f"Batch: {batch_number}", "", "Merged branches:"]
            body_lines += [f"  - {job.branch}" for job in integrated]
            body_lines += ["", "Work items completed:"]
            body_lines += [f"  - {job.work_item_id}" for job in integrated]
            _git_commit_paths(
                self.project_dir,
                [self.config.work_items_file, self.config.progress_file],
                f"ralph: mark {len(integrated)} item(s) complete (batch {batch_number})",
                "\n".join(body_lines),
            )
        return integrated

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(
        self,
        concurrency: Optional[int] = None,
        base_branch: Optional[str] = None,
        integration_branch: Optional[str] = None,
        *,
        create_pr: bool = False,
        skip_merge: bool = False,
    ) -> RunSummary:
        """Execute a whole run under the root lock.

        Raises:
            LockUnavailableError: If another live run holds the lock.
            RunAbortedError: If the base branch cannot be resolved.
            WorkspaceError: If worktrees cannot be used from this root.
            WorkItemStoreError: If the work-item document is unusable.
        """
        with RunLock(self.project_dir, self.policy):
            return self._run_locked(
                concurrency or self.config.max_parallel,
                base_branch,
                integration_branch,
                create_pr=create_pr,
                skip_merge=skip_merge,
            )

    def _run_locked(
        self,
        concurrency: int,
        base_branch: Optional[str],
        integration_branch: Optional[str],
        *,
        create_pr: bool,
        skip_merge: bool,
    ) -> RunSummary:
        base_branch = base_branch or _git_current_branch(self.project_dir)
        base_sha = _git_rev_parse(self.project_dir, base_branch) if base_branch else None
        if not base_branch or not base_sha:
            raise RunAbortedError(f"Failed to resolve base branch: {base_branch}")

        manager = WorkspaceManager(self.project_dir, self.run_id)
        self.store.validate()
        ensure_state_dir(self.project_dir)
        self.ledger.ensure()
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.manifest.ensure()

        if self.config.work_items_file in _git_status_paths(self.project_dir):
            logger.warning(
                "{} has uncommitted changes; worktrees start from the last commit",
                self.config.work_items_file,
            )

        target = integration_branch or base_branch
        if create_pr and not integration_branch:
            target = f"ralph/parallel-{self.run_id}"
        summary = RunSummary(
            run_id=self.run_id,
            run_dir=self.run_dir,
            manifest_path=self.manifest.path,
            base_sha=base_sha,
            target=target,
        )

        items = self.store.incomplete_ordered()
        if not items:
            logger.success("No pending work items")
            return summary

        logger.info(
            "Parallel run {}: {} item(s), up to {} at a time, base {} ({})",
            self.run_id,
            len(items),
            concurrency,
            base_branch,
            base_sha[:12],
        )
        if target != base_branch and not _git_reset_branch(self.project_dir, target, base_sha):
            raise RunAbortedError(f"Failed to create or reset integration branch: {target}")

        for batch_number, batch in enumerate(plan_batches(items, concurrency), start=1):
            summary.batches = batch_number
            logger.info(
                "Batch {}: {}", batch_number, ", ".join(item.id for item in batch)
            )
            jobs, workspaces = self._prepare_jobs(manager, batch, base_sha)
            self._execute_batch(jobs, base_sha)
            summary.jobs.extend(jobs)
            self.print_batch(batch_number, jobs)
            mergeable = self._finish_jobs(manager, jobs, workspaces, base_sha, summary)

            if not mergeable:
                logger.warning("Batch {}: no successful branches to merge", batch_number)
            elif skip_merge and not create_pr:
                summary.unmerged.extend(job.branch for job in mergeable)
                logger.info("Batch {}: merge skipped; branches left for review", batch_number)
            else:
                self._merge_batch(manager, mergeable, target, base_sha, batch_number, summary)

            remaining = len(self.store.incomplete_ordered())
            if remaining and not skip_merge:
                logger.warning("{} work item(s) still incomplete after batch {}", remaining, batch_number)

        if create_pr:
            if target == base_branch:
                logger.warning("Cannot open a pull request: target equals base branch {}", base_branch)
            elif not summary.integrated:
                logger.warning("No branches were merged; skipping pull request")
            else:
                _open_pull_request(self.project_dir, target, base=base_branch)

        clean = not summary.failed and not summary.conflicted and not summary.merge_errors
        finished = bool(summary.unmerged) or self.store.is_complete()
        summary.exit_code = EXIT_OK if clean and finished else EXIT_INCOMPLETE
        return summary

    # ------------------------------------------------------------------
    # reporting
    # ------------------------------------------------------------------

    def print_batch(self, batch_number: int, jobs: list[Job]) -> None:
        table = Table(title=f"Batch {batch_number} results")
        table.add_column("Job", style="cyan")
        table.add_column("Item")
        table.add_column("Status")
        table.add_column("Outcome")
        table.add_column("Commits", justify="right")
        table.add_column("Branch", style="dim")
        for job in jobs:
            outcome = job.outcome.value if job.outcome else "-"
            color = _OUTCOME_COLORS.get(job.outcome, "red")
            table.add_row(
                job.job_id,
                job.work_item_id,
                job.status.value,
                f"[{color}]{outcome}[/{color}]",
                str(job.commit_count),
                job.branch,
            )
        self.console.print(table)
        for job in jobs:
            if job.outcome is JobOutcome.ERROR:
                tail = _read_text_tail(job.log_path, max_chars=600).strip()
                if tail:
                    self.console.print(f"[red]{job.job_id} log tail:[/red]\n{tail}")

    def print_summary(self, summary: RunSummary) -> None:
        table = Table(title=f"Parallel run {summary.run_id}", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Target", summary.target)
        table.add_row("Batches", str(summary.batches))
        table.add_row("Integrated", ", ".join(summary.integrated) or "-")
        table.add_row("Succeeded", str(len(summary.succeeded)))
        table.add_row("Failed", "\n".join(summary.failed) or "-")
        table.add_row("Conflicted", "\n".join(summary.conflicted) or "-")
        table.add_row("Merge errors", "\n".join(summary.merge_errors) or "-")
        table.add_row("Unmerged", "\n".join(summary.unmerged) or "-")
        table.add_row("Preserved worktrees", "\n".join(summary.preserved) or "-")
        table.add_row("Run dir", str(summary.run_dir))
        table.add_row("Manifest", str(summary.manifest_path))
        self.console.print(table)
