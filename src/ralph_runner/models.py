"""Define work items, worker signals and the run/job records produced by the runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .constants import MISSING_PRIORITY


@dataclass
class WorkItem:
    """One entry of the work-item document (a user story)."""

    id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: Optional[int] = None
    passes: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def effective_priority(self) -> int:
        return self.priority if self.priority is not None else MISSING_PRIORITY

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        """Create a `WorkItem` from one raw document entry.

        Args:
            data: Raw entry from the `userStories` list.

        Returns:
            A `WorkItem` with unknown keys preserved in `extra`.

        Raises:
            ValueError: If the id is missing or the priority is not an integer.
        """
        extra = dict(data)
        raw_id = extra.pop("id", None)
        if raw_id is None or not str(raw_id).strip():
            raise ValueError("work item is missing an id")

        raw_priority = extra.pop("priority", None)
        priority: Optional[int]
        if raw_priority is None:
            priority = None
        elif isinstance(raw_priority, bool):
            raise ValueError(f"{raw_id}: priority must be an integer")
        else:
            try:
                priority = int(raw_priority)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{raw_id}: priority must be an integer") from exc

        criteria = extra.pop("acceptanceCriteria", None) or []
        if not isinstance(criteria, list):
            criteria = [str(criteria)]

        return cls(
            id=str(raw_id),
            title=str(extra.pop("title", "") or ""),
            description=str(extra.pop("description", "") or ""),
            acceptance_criteria=[str(item) for item in criteria],
            priority=priority,
            passes=extra.pop("passes", False) is True,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
        }
        if self.priority is not None:
            data["priority"] = self.priority
        data["passes"] = self.passes
        data.update(self.extra)
        return data


class SignalKind(str, Enum):
    """Closed vocabulary through which a worker reports its outcome."""

    US_DONE = "US-DONE"
    COMPLETE = "COMPLETE"
    ROTATE = "ROTATE"
    GUTTER = "GUTTER"
    DEFER = "DEFER"
    WARN = "WARN"
    UNCLASSIFIED = "UNCLASSIFIED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_SIGNALS


_TERMINAL_SIGNALS = frozenset(
    {
        SignalKind.US_DONE,
        SignalKind.COMPLETE,
        SignalKind.ROTATE,
        SignalKind.GUTTER,
        SignalKind.DEFER,
    }
)


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    work_item_id: Optional[str] = None

    @classmethod
    def parse(cls, token: str) -> Optional["Signal"]:
        """Parse a marker body such as ``US-DONE US-001`` or ``ROTATE``."""
        parts = token.strip().split()
        if not parts:
            return None
        head = parts[0].upper()
        if head == SignalKind.US_DONE.value:
            if len(parts) < 2:
                return None
            return cls(SignalKind.US_DONE, parts[1])
        if len(parts) != 1:
            return None
        try:
            kind = SignalKind(head)
        except ValueError:
            return None
        if kind in (SignalKind.UNCLASSIFIED, SignalKind.ERROR, SignalKind.US_DONE):
            return None
        return cls(kind)

    def __str__(self) -> str:
        if self.work_item_id:
            return f"{self.kind.value} {self.work_item_id}"
        return self.kind.value


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of one worker invocation."""

    signal: Signal
    exit_code: Optional[int]
    log_path: Optional[Path] = None
    advisories: tuple[Signal, ...] = ()
    estimated_tokens: int = 0
    launch_error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.launch_error is not None or self.exit_code not in (0, None)


class JobStatus(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class JobOutcome(str, Enum):
    SUCCESS = "success"
    NO_COMMITS = "no_commits"
    ERROR = "error"


class CleanupResult(str, Enum):
    CLEANED = "cleaned"
    LEFT_IN_PLACE = "left_in_place"


class MergeOutcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class Job:
    """One concurrent worker execution inside a parallel run."""

    job_id: str
    work_item: WorkItem
    branch: str
    workspace: Path
    log_path: Path
    status: JobStatus = JobStatus.WAITING
    outcome: Optional[JobOutcome] = None
    commit_count: int = 0
    signal: Optional[Signal] = None
    cleanup: Optional[CleanupResult] = None
    error: Optional[str] = None

    @property
    def work_item_id(self) -> str:
        return self.work_item.id


class ManifestPhase(str, Enum):
    START = "start"
    FINISH = "finish"
    MERGE = "merge"
    BRANCH_CLEANUP = "branch_cleanup"


@dataclass(frozen=True)
class ManifestEntry:
    timestamp: str
    phase: ManifestPhase
    run_id: str
    job_id: str
    work_item_id: str
    branch: str
    status: str
    base_sha: str
    log_file: str
    workspace: str

    def to_row(self) -> list[str]:
        return [
            self.timestamp,
            self.phase.value,
            self.run_id,
            self.job_id,
            self.work_item_id,
            self.branch,
            self.status,
            self.base_sha,
            self.log_file,
            self.workspace,
        ]


@dataclass
class LoopResult:
    """Result of a sequential run."""

    exit_code: int
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    stuck_on: Optional[str] = None
    invocations: int = 0


@dataclass
class RunSummary:
    """Human-facing summary of a parallel run."""

    run_id: str
    run_dir: Path
    manifest_path: Path
    base_sha: str
    target: str
    exit_code: int = 0
    integrated: list[str] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)
    merge_errors: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)
    unmerged: list[str] = field(default_factory=list)
    batches: int = 0
    jobs: list[Job] = field(default_factory=list)
