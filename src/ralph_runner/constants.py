"""Paths, file names and defaults shared across the runner."""

from __future__ import annotations

STATE_DIR_NAME = ".ralph"
CONFIG_FILE = "config.yaml"
GUARDRAILS_FILE = "guardrails.md"
ACTIVITY_LOG_FILE = "activity.log"
ERRORS_LOG_FILE = "errors.log"

DEFAULT_WORK_ITEMS_FILE = "ralph/prd.json"
DEFAULT_PROGRESS_FILE = "progress.txt"

LOCKS_DIR_NAME = "locks"
PARALLEL_LOCK_NAME = "parallel.lock"
LOCK_PID_FILE = "pid"
LOCK_CREATED_AT_FILE = "created_at"

PARALLEL_STATE_DIR_NAME = "parallel"
WORKTREE_BASE_DIR_NAME = ".ralph-worktrees"
MANIFEST_FILE = "manifest.tsv"
BRANCH_PREFIX = "ralph/parallel"

DEFAULT_MODEL = "opus-4.5-thinking"
DEFAULT_WORKER_COMMAND = (
    "cursor-agent -p --force --approve-mcps --output-format stream-json "
    "--model {model} --workspace {workspace} {prompt}"
)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_WARN_THRESHOLD = 70_000
DEFAULT_ROTATE_THRESHOLD = 80_000
DEFAULT_LOCK_STALE_MINUTES = 45
DEFAULT_MAX_PARALLEL = 3
DEFAULT_RETRY_PAUSE_SECONDS = 2.0
DEFAULT_BACKOFF_BASE_SECONDS = 15.0
DEFAULT_BACKOFF_MAX_SECONDS = 120.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0

# Items without an explicit priority sort after everything else.
MISSING_PRIORITY = 999

SLUG_MAX_LENGTH = 40
CHARS_PER_TOKEN = 4
WORKER_TERMINATE_GRACE_SECONDS = 5

EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_FATAL = 2
EXIT_STUCK = 3
EXIT_INTERRUPTED = 130

MERGE_FALLBACK_NAME = "ralph-parallel"
MERGE_FALLBACK_EMAIL = "ralph-parallel@localhost"

MANIFEST_COLUMNS = (
    "timestamp",
    "phase",
    "run_id",
    "job_id",
    "us_id",
    "branch",
    "status",
    "base_sha",
    "log_file",
    "worktree_dir",
)

GUARDRAILS_TEMPLATE = """# Guardrails

Lessons learned across iterations. Read before starting; append when something bites.
"""

PROGRESS_TEMPLATE = """# Progress Log

One line per completed work item: [timestamp] ID: summary
"""
