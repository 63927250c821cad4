"""Load runner configuration from `.ralph/config.yaml` and the environment.

Precedence, highest first: explicit overrides (CLI flags), environment
variables, the config file, built-in defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_LOCK_STALE_MINUTES,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_PARALLEL,
    DEFAULT_MODEL,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_PROGRESS_FILE,
    DEFAULT_RETRY_PAUSE_SECONDS,
    DEFAULT_ROTATE_THRESHOLD,
    DEFAULT_WARN_THRESHOLD,
    DEFAULT_WORK_ITEMS_FILE,
    DEFAULT_WORKER_COMMAND,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error
from .utils import _coerce_float, _coerce_int


@dataclass(frozen=True)
class RunnerConfig:
    model: str = DEFAULT_MODEL
    worker_command: str = DEFAULT_WORKER_COMMAND
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    warn_threshold: int = DEFAULT_WARN_THRESHOLD
    rotate_threshold: int = DEFAULT_ROTATE_THRESHOLD
    lock_stale_minutes: int = DEFAULT_LOCK_STALE_MINUTES
    max_parallel: int = DEFAULT_MAX_PARALLEL
    work_items_file: str = DEFAULT_WORK_ITEMS_FILE
    progress_file: str = DEFAULT_PROGRESS_FILE
    retry_pause_seconds: float = DEFAULT_RETRY_PAUSE_SECONDS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS

    def with_overrides(self, **overrides: Any) -> "RunnerConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


ENV_VARS = {
    "model": "RALPH_MODEL",
    "worker_command": "RALPH_WORKER_COMMAND",
    "max_attempts": "MAX_ITERATIONS",
    "warn_threshold": "WARN_THRESHOLD",
    "rotate_threshold": "ROTATE_THRESHOLD",
    "lock_stale_minutes": "LOCK_STALE_MINUTES",
    "max_parallel": "MAX_PARALLEL",
    "work_items_file": "RALPH_PRD_FILE",
    "progress_file": "RALPH_PROGRESS_FILE",
}


def load_config_file(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _coerce(value: Any, current: Any) -> Any:
    """Coerce `value` to the type of `current`; None means invalid."""
    if isinstance(current, int):
        number = _coerce_int(value, -1)
        return number if number > 0 else None
    if isinstance(current, float):
        number = _coerce_float(value, -1.0)
        return number if number >= 0 else None
    text = str(value).strip()
    return text or None


def _merge(base: RunnerConfig, values: Mapping[str, Any], source: str) -> RunnerConfig:
    updates: dict[str, Any] = {}
    for spec in fields(RunnerConfig):
        raw = values.get(spec.name)
        if raw is None:
            continue
        coerced = _coerce(raw, getattr(base, spec.name))
        if coerced is None:
            logger.warning("Ignoring invalid {} value for {}: {!r}", source, spec.name, raw)
            continue
        updates[spec.name] = coerced
    return replace(base, **updates)


def load_runner_config(
    project_dir: Path,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RunnerConfig:
    environ = os.environ if environ is None else environ
    config = RunnerConfig()

    file_values, err = load_config_file(project_dir)
    if err:
        logger.warning("Ignoring malformed config file: {}", err)
    config = _merge(config, file_values, "config file")

    env_values = {name: environ.get(var) for name, var in ENV_VARS.items() if environ.get(var)}
    config = _merge(config, env_values, "environment")

    if overrides:
        config = config.with_overrides(**overrides)

    if config.rotate_threshold < config.warn_threshold:
        logger.warning(
            "rotate_threshold ({}) is below warn_threshold ({})",
            config.rotate_threshold,
            config.warn_threshold,
        )
    return config
