"""Configure loguru sinks and format small payloads for output."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import ACTIVITY_LOG_FILE, ERRORS_LOG_FILE

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {module}:{line} | {message}"


def configure_logging(level: str = "INFO", state_dir: Optional[Path] = None) -> None:
    """Send logs to stderr and, when given a state dir, to its activity/error logs.

    Workers read `errors.log` as a list of recent failures, so it only gets
    warnings and above.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT)
    if state_dir is None:
        return
    state_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        state_dir / ACTIVITY_LOG_FILE,
        level=level.upper(),
        format=FILE_FORMAT,
        enqueue=True,
    )
    logger.add(state_dir / ERRORS_LOG_FILE, level="WARNING", format=FILE_FORMAT, enqueue=True)


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(obj)
