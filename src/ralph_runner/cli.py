"""Command-line entry point for the ralph-runner subcommands."""

from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import RunnerConfig, load_runner_config
from .constants import EXIT_FATAL, EXIT_INCOMPLETE, EXIT_INTERRUPTED, EXIT_OK, EXIT_STUCK
from .ledger import ProgressLedger
from .locking import LockUnavailableError
from .logging_utils import configure_logging, pretty
from .parallel import ParallelScheduler, RunAbortedError
from .sequential import ItemState, SequentialRunner
from .state import PrerequisiteError, check_prerequisites, ensure_state_dir
from .store import WorkItemStore, WorkItemStoreError
from .worker import AgentProcessWorker, WorkerError
from .workspaces import WorkspaceError, cleanup_all_worktrees

# Failures that stop a run before or instead of doing any work.
FATAL_ERRORS = (
    PrerequisiteError,
    LockUnavailableError,
    WorkItemStoreError,
    WorkspaceError,
    RunAbortedError,
    WorkerError,
)


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _config(args: argparse.Namespace, **overrides: Any) -> RunnerConfig:
    project_dir = _resolve_project_dir(args.project_dir)
    return load_runner_config(project_dir, overrides={"model": getattr(args, "model", None), **overrides})


def _prepare(args: argparse.Namespace, config: RunnerConfig) -> tuple[Path, WorkItemStore, AgentProcessWorker]:
    project_dir = _resolve_project_dir(args.project_dir)
    state = ensure_state_dir(project_dir)
    configure_logging(args.log_level, state)
    store = WorkItemStore.for_project(project_dir, config.work_items_file)
    worker = AgentProcessWorker.from_config(config)
    worker.validate()
    check_prerequisites(project_dir, store, worker_executable=worker.executable)
    ProgressLedger(project_dir / config.progress_file).ensure()
    return project_dir, store, worker


def _install_termination_handler() -> None:
    """Turn SIGTERM into SystemExit so context managers release the run lock."""

    def _handler(signum: int, frame: Any) -> None:
        raise SystemExit(128 + signum)

    signal.signal(signal.SIGTERM, _handler)


def _run(args: argparse.Namespace) -> int:
    config = _config(args, max_attempts=args.max_attempts)
    project_dir, store, worker = _prepare(args, config)
    runner = SequentialRunner(
        project_dir,
        config,
        store=store,
        worker=worker,
        branch=args.branch,
        open_pr=args.open_pr,
        commit_first=not args.no_commit,
    )
    result = runner.run()
    sys.stdout.write(
        f"Completed: {', '.join(result.completed) or '-'}\n"
        f"Skipped:   {', '.join(result.skipped) or '-'}\n"
        f"Invocations: {result.invocations}\n"
    )
    if result.stuck_on:
        sys.stderr.write(f"Stopped: worker reported being stuck on {result.stuck_on}\n")
    return result.exit_code


def _once(args: argparse.Namespace) -> int:
    config = _config(args)
    project_dir, store, worker = _prepare(args, config)
    runner = SequentialRunner(project_dir, config, store=store, worker=worker, commit_first=False)
    item, result, state = runner.run_once()
    if item is None or result is None:
        sys.stdout.write("All work items complete\n")
        return EXIT_OK
    sys.stdout.write(f"{item.id}: signal={result.signal} state={state.value}\n")
    if result.log_path:
        sys.stdout.write(f"Log: {result.log_path}\n")
    if state is ItemState.DONE:
        return EXIT_OK
    if state is ItemState.STUCK:
        return EXIT_STUCK
    return EXIT_INCOMPLETE


def _parallel(args: argparse.Namespace) -> int:
    config = _config(args, max_parallel=args.max_parallel)
    project_dir, store, worker = _prepare(args, config)
    _install_termination_handler()
    scheduler = ParallelScheduler(project_dir, config, worker=worker, store=store)
    summary = scheduler.run(
        args.max_parallel,
        args.base_branch,
        args.integration_branch,
        create_pr=args.create_pr,
        skip_merge=args.no_merge,
    )
    scheduler.print_summary(summary)
    return summary.exit_code


def _status(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    config = load_runner_config(project_dir)
    store = WorkItemStore.for_project(project_dir, config.work_items_file)
    document = store.load()
    if args.json:
        payload = {
            "project": document.project,
            "description": document.description,
            "total": document.total,
            "done": document.done,
            "next": [item.id for item in store.incomplete_ordered()],
            "items": [item.to_dict() for item in document.items],
        }
        sys.stdout.write(pretty(payload) + "\n")
        return EXIT_OK

    console = Console()
    table = Table(title=f"{document.project or project_dir.name}: {document.done}/{document.total} complete")
    table.add_column("", width=2)
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Priority", justify="right")
    for item in document.items:
        table.add_row(
            "[green]✓[/green]" if item.passes else "·",
            item.id,
            item.title,
            str(item.priority) if item.priority is not None else "-",
        )
    console.print(table)
    return EXIT_OK


def _clean_worktrees(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    removed, kept = cleanup_all_worktrees(project_dir)
    for path in removed:
        sys.stdout.write(f"removed {path}\n")
    for path in kept:
        sys.stdout.write(f"kept    {path} (uncommitted changes)\n")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ralph runner - drive an autonomous agent through a queue of user stories",
    )
    parser.add_argument("--project-dir", default=None, help="Repository root (default: current directory)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console and activity log level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Work through items one at a time")
    run.add_argument("--model", default=None)
    run.add_argument("--max-attempts", type=int, default=None, help="Attempts per item (default: 3)")
    run.add_argument("--branch", default=None, help="Check out (or create) this branch first")
    run.add_argument("--open-pr", action="store_true", help="Push and open a pull request when done")
    run.add_argument("--no-commit", action="store_true", help="Do not commit pending changes before starting")
    run.set_defaults(func=_run)

    once = subparsers.add_parser("once", help="Invoke the worker once on the next item")
    once.add_argument("--model", default=None)
    once.set_defaults(func=_once)

    parallel = subparsers.add_parser("parallel", help="Run items concurrently in isolated worktrees")
    parallel.add_argument("--model", default=None)
    parallel.add_argument("--max-parallel", type=int, default=None, help="Jobs per batch (default: 3)")
    parallel.add_argument("--base-branch", default=None, help="Branch to start from (default: current)")
    parallel.add_argument("--integration-branch", default=None, help="Merge into this branch instead of the base")
    parallel.add_argument("--create-pr", action="store_true", help="Open a pull request for the integration branch")
    parallel.add_argument("--no-merge", action="store_true", help="Leave successful branches unmerged")
    parallel.set_defaults(func=_parallel)

    status = subparsers.add_parser("status", help="Show work-item progress")
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=_status)

    clean = subparsers.add_parser("clean-worktrees", help="Remove leftover clean worktrees")
    clean.set_defaults(func=_clean_worktrees)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return EXIT_INCOMPLETE
    try:
        return int(handler(args))
    except FATAL_ERRORS as exc:
        logger.error("{}", exc)
        sys.stderr.write(f"Error: {exc}\n")
        return EXIT_FATAL
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted\n")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
