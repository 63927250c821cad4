"""Classify raw worker output into the signal vocabulary.

Workers report outcomes with markers of the form ``<ralph>TOKEN</ralph>``.
The classifier also estimates context size from output volume (emitting WARN,
then ROTATE) and turns rate-limit errors into DEFER.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Optional

from .constants import CHARS_PER_TOKEN, DEFAULT_ROTATE_THRESHOLD, DEFAULT_WARN_THRESHOLD
from .models import Signal, SignalKind

MARKER_RE = re.compile(r"<ralph>\s*(.*?)\s*</ralph>", re.IGNORECASE | re.DOTALL)
RATE_LIMIT_RE = re.compile(
    r"rate[\s_-]?limit|too many requests|\b429\b|overloaded|quota exceeded|resource[_ ]exhausted",
    re.IGNORECASE,
)

# Stream events that echo our own input rather than worker output.
_INPUT_EVENT_TYPES = {"user", "system"}


def parse_markers(text: str) -> list[Signal]:
    """Return every recognised marker in `text`, in order."""
    signals = []
    for match in MARKER_RE.finditer(text):
        signal = Signal.parse(match.group(1))
        if signal is not None:
            signals.append(signal)
    return signals


def _collect_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _collect_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _collect_strings(item)


def _decode_event(line: str) -> Optional[dict[str, Any]]:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _is_error_event(event: Optional[dict[str, Any]]) -> bool:
    if event is None:
        # Plain text usually comes from stderr.
        return True
    if event.get("type") == "error" or event.get("is_error") is True:
        return True
    return str(event.get("subtype", "")).startswith("error")


def classify_line(line: str) -> list[Signal]:
    """Map one line of output to the signals it carries (token budget aside)."""
    event = _decode_event(line)
    signals: list[Signal] = []
    if event is None:
        signals.extend(parse_markers(line))
    elif event.get("type") not in _INPUT_EVENT_TYPES:
        signals.extend(parse_markers("\n".join(_collect_strings(event))))
    if _is_error_event(event) and RATE_LIMIT_RE.search(line):
        signals.append(Signal(SignalKind.DEFER))
    return signals


class OutputClassifier:
    """Stateful classifier for one invocation's output stream."""

    def __init__(
        self,
        warn_threshold: int = DEFAULT_WARN_THRESHOLD,
        rotate_threshold: int = DEFAULT_ROTATE_THRESHOLD,
    ):
        self.warn_threshold = warn_threshold
        self.rotate_threshold = rotate_threshold
        self._chars = 0
        self._warned = False
        self._rotated = False

    @property
    def estimated_tokens(self) -> int:
        return self._chars // CHARS_PER_TOKEN

    def feed(self, line: str) -> list[Signal]:
        self._chars += len(line)
        signals = classify_line(line)
        tokens = self.estimated_tokens
        if not self._warned and tokens >= self.warn_threshold:
            self._warned = True
            signals.append(Signal(SignalKind.WARN))
        if not self._rotated and tokens >= self.rotate_threshold:
            self._rotated = True
            signals.append(Signal(SignalKind.ROTATE))
        return signals
