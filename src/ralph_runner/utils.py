"""Provide utility helpers for timestamps, process liveness and naming."""

from __future__ import annotations

import os
import random
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional

from .constants import SLUG_MAX_LENGTH


def _now_iso_z() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if not isinstance(value, str):
            value = str(value)
        value = value.strip()
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        # If a naive timestamp slips in, assume UTC to avoid crashes.
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _pid_is_running(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def slugify(value: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim and cap the length."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:max_length].strip("-")


def new_run_id() -> str:
    return f"{int(time.time())}-{secrets.token_hex(4)}"


def backoff_delay(
    attempt: int,
    base_seconds: float,
    max_seconds: float,
    jitter: bool = True,
) -> float:
    """Exponential backoff for attempt 1, 2, 3... capped at `max_seconds`.

    With jitter, the delay is scaled by a random factor in [0.5, 1.0] so that
    concurrent runners do not retry in lockstep.
    """
    exponent = max(attempt - 1, 0)
    delay = min(base_seconds * (2 ** exponent), max_seconds)
    if jitter:
        delay *= random.uniform(0.5, 1.0)
    return delay
