"""Work-item store backed by a JSON document (`project`, `description`, `userStories`).

Reads always go to disk so that edits made between iterations are observed.
The only mutation is :meth:`WorkItemStore.mark_complete`, which performs a
read-modify-write under an inter-process file lock and an atomic replace.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock
from loguru import logger

from .constants import LOCKS_DIR_NAME, STATE_DIR_NAME
from .io_utils import _atomic_write_json, _load_data_with_error
from .models import WorkItem

ITEMS_KEY = "userStories"


class WorkItemStoreError(ValueError):
    """Raised when the work-item document is missing, malformed or inconsistent."""


@dataclass
class WorkItemDocument:
    project: str
    description: str
    items: list[WorkItem] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def done(self) -> int:
        return sum(1 for item in self.items if item.passes)


def _parse_document(path: Path, data: dict[str, Any]) -> WorkItemDocument:
    raw_items = data.get(ITEMS_KEY)
    if not isinstance(raw_items, list):
        raise WorkItemStoreError(f"{path.name}: '{ITEMS_KEY}' must be a list")

    items: list[WorkItem] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise WorkItemStoreError(f"{path.name}: {ITEMS_KEY}[{index}] must be an object")
        try:
            item = WorkItem.from_dict(raw)
        except ValueError as exc:
            raise WorkItemStoreError(f"{path.name}: {ITEMS_KEY}[{index}]: {exc}") from exc
        if item.id in seen:
            raise WorkItemStoreError(f"{path.name}: duplicate work item id {item.id!r}")
        seen.add(item.id)
        items.append(item)

    return WorkItemDocument(
        project=str(data.get("project") or ""),
        description=str(data.get("description") or ""),
        items=items,
    )


def order_for_processing(items: list[WorkItem]) -> list[WorkItem]:
    """Return incomplete items by ascending priority, ties kept in document order."""
    pending = [item for item in items if not item.passes]
    # sorted() is stable, so equal priorities keep their original order.
    return sorted(pending, key=lambda item: item.effective_priority)


class WorkItemStore:
    """File-backed queue of work items and their completion state."""

    def __init__(self, path: Path, lock_path: Optional[Path] = None):
        self.path = path
        self.lock_path = lock_path or path.with_name(path.name + ".lock")

    @classmethod
    def for_project(cls, project_dir: Path, work_items_file: str) -> "WorkItemStore":
        project_dir = project_dir.resolve()
        path = project_dir / work_items_file
        lock_path = project_dir / STATE_DIR_NAME / LOCKS_DIR_NAME / f"{path.name}.lock"
        return cls(path, lock_path)

    def _read_raw(self) -> dict[str, Any]:
        if not self.path.exists():
            raise WorkItemStoreError(f"Work-item file not found: {self.path}")
        data, err = _load_data_with_error(self.path, {})
        if err:
            raise WorkItemStoreError(err)
        return data

    def load(self) -> WorkItemDocument:
        return _parse_document(self.path, self._read_raw())

    def validate(self) -> WorkItemDocument:
        """Load the document and fail loudly if it cannot drive a run."""
        document = self.load()
        if not document.items:
            raise WorkItemStoreError(f"{self.path.name}: no work items defined")
        return document

    def items(self) -> list[WorkItem]:
        return self.load().items

    def incomplete_ordered(self) -> list[WorkItem]:
        return order_for_processing(self.items())

    def next_incomplete(self, exclude: Optional[set[str]] = None) -> Optional[WorkItem]:
        exclude = exclude or set()
        for item in self.incomplete_ordered():
            if item.id not in exclude:
                return item
        return None

    def find(self, item_id: str) -> Optional[WorkItem]:
        for item in self.items():
            if item.id == item_id:
                return item
        return None

    def get(self, item_id: str) -> WorkItem:
        item = self.find(item_id)
        if item is None:
            raise WorkItemStoreError(f"Unknown work item id: {item_id}")
        return item

    def is_complete(self) -> bool:
        return all(item.passes for item in self.items())

    def mark_complete(self, item_id: str) -> bool:
        """Set `passes` to true for one id.

        Returns:
            True if the item transitioned, False if it was already complete.

        Raises:
            WorkItemStoreError: If the id is unknown or the document is malformed.
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(self.lock_path)):
            data = self._read_raw()
            # Validate before writing so a corrupted document is never overwritten.
            _parse_document(self.path, data)
            for raw in data[ITEMS_KEY]:
                if str(raw.get("id")) != item_id:
                    continue
                if raw.get("passes") is True:
                    return False
                raw["passes"] = True
                _atomic_write_json(self.path, data)
                logger.info("Marked {} complete in {}", item_id, self.path.name)
                return True
        raise WorkItemStoreError(f"Unknown work item id: {item_id}")
