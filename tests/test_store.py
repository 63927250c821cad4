"""Test work-item ordering, validation and completion updates."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner.models import WorkItem
from ralph_runner.store import WorkItemStore, WorkItemStoreError, order_for_processing


def _write_doc(path: Path, stories: list[dict]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"project": "demo", "description": "Demo project", "userStories": stories}),
        encoding="utf-8",
    )
    return path


def _story(item_id: str, priority: int | None = None, passes: bool = False, **extra) -> dict:
    story = {"id": item_id, "title": f"Story {item_id}", "passes": passes, **extra}
    if priority is not None:
        story["priority"] = priority
    return story


def test_incomplete_items_are_ordered_by_priority_with_stable_ties(tmp_path: Path) -> None:
    path = _write_doc(
        tmp_path / "prd.json",
        [_story("A", 5), _story("B", 1), _story("C", 1), _story("D", 3)],
    )
    store = WorkItemStore(path)

    assert [item.id for item in store.incomplete_ordered()] == ["B", "C", "A", "D"]
    assert store.next_incomplete().id == "B"
    assert store.next_incomplete(exclude={"B"}).id == "C"


def test_missing_priority_sorts_after_explicit_priorities(tmp_path: Path) -> None:
    path = _write_doc(
        tmp_path / "prd.json",
        [_story("NOPRI"), _story("LOW", 50), _story("DONE", 1, passes=True)],
    )
    store = WorkItemStore(path)

    assert [item.id for item in store.incomplete_ordered()] == ["LOW", "NOPRI"]


def test_order_for_processing_skips_completed_items() -> None:
    items = [WorkItem(id="X", priority=1, passes=True), WorkItem(id="Y", priority=2)]
    assert [item.id for item in order_for_processing(items)] == ["Y"]


def test_mark_complete_flips_only_the_target_entry(tmp_path: Path) -> None:
    path = _write_doc(
        tmp_path / "prd.json",
        [
            _story("US-001", 1, acceptanceCriteria=["works"], notes="keep me"),
            _story("US-002", 2),
        ],
    )
    before = json.loads(path.read_text(encoding="utf-8"))
    store = WorkItemStore(path)

    assert store.mark_complete("US-001") is True

    after = json.loads(path.read_text(encoding="utf-8"))
    assert after["userStories"][0]["passes"] is True
    assert after["userStories"][0]["notes"] == "keep me"
    assert after["userStories"][1] == before["userStories"][1]
    assert after["project"] == before["project"]
    assert store.is_complete() is False


def test_mark_complete_is_monotonic(tmp_path: Path) -> None:
    path = _write_doc(tmp_path / "prd.json", [_story("US-001", 1)])
    store = WorkItemStore(path)

    assert store.mark_complete("US-001") is True
    assert store.mark_complete("US-001") is False
    assert store.get("US-001").passes is True
    assert store.is_complete() is True
    assert store.next_incomplete() is None


def test_mark_complete_rejects_unknown_id(tmp_path: Path) -> None:
    path = _write_doc(tmp_path / "prd.json", [_story("US-001", 1)])
    store = WorkItemStore(path)

    with pytest.raises(WorkItemStoreError, match="Unknown work item id"):
        store.mark_complete("US-999")


def test_duplicate_ids_are_rejected(tmp_path: Path) -> None:
    path = _write_doc(tmp_path / "prd.json", [_story("US-001", 1), _story("US-001", 2)])
    with pytest.raises(WorkItemStoreError, match="duplicate"):
        WorkItemStore(path).load()


def test_malformed_document_is_not_overwritten(tmp_path: Path) -> None:
    path = tmp_path / "prd.json"
    path.write_text('{"userStories": [ {"id": "US-001"', encoding="utf-8")
    store = WorkItemStore(path)

    with pytest.raises(WorkItemStoreError, match="JSONDecodeError"):
        store.mark_complete("US-001")
    assert path.read_text(encoding="utf-8") == '{"userStories": [ {"id": "US-001"'


def test_missing_file_and_empty_list_fail_validation(tmp_path: Path) -> None:
    with pytest.raises(WorkItemStoreError, match="not found"):
        WorkItemStore(tmp_path / "absent.json").load()

    path = _write_doc(tmp_path / "prd.json", [])
    with pytest.raises(WorkItemStoreError, match="no work items"):
        WorkItemStore(path).validate()


def test_non_integer_priority_is_rejected(tmp_path: Path) -> None:
    path = _write_doc(tmp_path / "prd.json", [{"id": "US-001", "priority": "high"}])
    with pytest.raises(WorkItemStoreError, match="priority must be an integer"):
        WorkItemStore(path).load()


def test_for_project_places_lock_under_state_dir(tmp_path: Path) -> None:
    store = WorkItemStore.for_project(tmp_path, "ralph/prd.json")
    assert store.path == tmp_path.resolve() / "ralph" / "prd.json"
    assert store.lock_path == tmp_path.resolve() / ".ralph" / "locks" / "prd.json.lock"
