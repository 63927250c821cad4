"""Append-only records: the progress ledger and the per-run manifest."""

from __future__ import annotations

import re
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import MANIFEST_COLUMNS, PROGRESS_TEMPLATE
from .io_utils import _append_line
from .models import ManifestEntry, ManifestPhase
from .utils import _now_iso_z

_ENTRY_RE = re.compile(r"^\[(?P<timestamp>[^\]]+)\]\s+(?P<item_id>[^:\s]+):\s?(?P<summary>.*)$")


def _single_line(text: str) -> str:
    return " ".join(text.split())


class ProgressLedger:
    """Plain-text log with one `[timestamp] ID: summary` line per completed item.

    The file is never rewritten. Workers may append to it too, so a line for an
    id written by anyone counts as that item's completion record.
    """

    def __init__(self, path: Path):
        self.path = path

    def ensure(self) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(PROGRESS_TEMPLATE, encoding="utf-8")

    def entries(self) -> list[tuple[str, str, str]]:
        if not self.path.exists():
            return []
        found = []
        for line in self.path.read_text(encoding="utf-8", errors="replace").splitlines():
            match = _ENTRY_RE.match(line.strip())
            if match:
                found.append((match["timestamp"], match["item_id"], match["summary"]))
        return found

    def has_entry(self, item_id: str) -> bool:
        return any(entry_id == item_id for _, entry_id, _ in self.entries())

    def append(self, item_id: str, summary: str, timestamp: Optional[str] = None) -> None:
        self.ensure()
        stamp = timestamp or _now_iso_z()
        _append_line(self.path, f"[{stamp}] {item_id}: {_single_line(summary)}")

    def append_once(self, item_id: str, summary: str) -> bool:
        """Append a completion line unless one already exists for `item_id`."""
        if self.has_entry(item_id):
            logger.debug("Progress ledger already records {}", item_id)
            return False
        self.append(item_id, summary)
        return True


class ManifestWriter:
    """Tab-separated audit trail of job lifecycle events for one run."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def ensure(self) -> None:
        with self._lock:
            if self.path.exists():
                return
            _append_line(self.path, "\t".join(MANIFEST_COLUMNS))

    def append(self, entry: ManifestEntry) -> None:
        self.ensure()
        cells = [cell.replace("\t", " ").replace("\n", " ") for cell in entry.to_row()]
        with self._lock:
            _append_line(self.path, "\t".join(cells))

    def record(
        self,
        phase: ManifestPhase,
        *,
        run_id: str,
        job_id: str,
        work_item_id: str,
        branch: str,
        status: str,
        base_sha: str,
        log_file: str = "",
        workspace: str = "",
    ) -> ManifestEntry:
        entry = ManifestEntry(
            timestamp=_now_iso_z(),
            phase=phase,
            run_id=run_id,
            job_id=job_id,
            work_item_id=work_item_id,
            branch=branch,
            status=status,
            base_sha=base_sha,
            log_file=log_file,
            workspace=workspace,
        )
        self.append(entry)
        return entry

    def rows(self) -> list[dict[str, str]]:
        """Parse the manifest back into dicts (diagnostics and tests only)."""
        if not self.path.exists():
            return []
        lines = self.path.read_text(encoding="utf-8").splitlines()
        if not lines:
            return []
        header = lines[0].split("\t")
        return [dict(zip(header, line.split("\t"))) for line in lines[1:] if line]
