"""Launch worker processes and turn their output into a signal."""

from __future__ import annotations

import os
import re
import shlex
import signal as os_signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from loguru import logger

from .config import RunnerConfig
from .constants import (
    DEFAULT_ROTATE_THRESHOLD,
    DEFAULT_WARN_THRESHOLD,
    DEFAULT_WORKER_COMMAND,
    WORKER_TERMINATE_GRACE_SECONDS,
)
from .models import InvocationResult, Signal, SignalKind, WorkItem
from .signals import OutputClassifier

PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")
KNOWN_PLACEHOLDERS = {"prompt", "prompt_file", "workspace", "model", "log_file"}
# Signals that end the worker early in sequential mode.
INTERRUPTING_SIGNALS = {SignalKind.ROTATE, SignalKind.DEFER}


class WorkerError(RuntimeError):
    """Raised when the worker command template cannot be used."""


@dataclass(frozen=True)
class WorkRequest:
    work_item: WorkItem
    workspace: Path
    prompt: str
    log_path: Path
    model: str = ""
    stop_on_interrupt_signals: bool = True
    job_id: Optional[str] = None


class Worker(Protocol):
    def invoke(self, request: WorkRequest) -> InvocationResult:
        ...


def _format_command(
    template: str,
    *,
    prompt: str,
    prompt_file: Path,
    workspace: Path,
    model: str,
    log_file: Path,
) -> tuple[list[str], bool]:
    """Tokenise `template` and substitute placeholders per token.

    Substituting after splitting keeps multi-line prompts as a single argument.

    Returns:
        `(argv, expects_stdin)`.
    """
    try:
        tokens = shlex.split(template)
    except ValueError as exc:
        raise WorkerError(f"Cannot parse worker command: {exc}") from exc
    if not tokens:
        raise WorkerError("Worker command is empty")

    unknown = {
        name for token in tokens for name in PLACEHOLDER_RE.findall(token)
    } - KNOWN_PLACEHOLDERS
    if unknown:
        raise WorkerError(f"Unknown placeholder(s) in worker command: {', '.join(sorted(unknown))}")

    uses_prompt = any("{prompt}" in token or "{prompt_file}" in token for token in tokens)
    expects_stdin = "-" in tokens
    if not uses_prompt and not expects_stdin:
        raise WorkerError(
            "Worker command must include {prompt}, {prompt_file}, or '-' to accept stdin input."
        )

    values = {
        "prompt": prompt,
        "prompt_file": str(prompt_file),
        "workspace": str(workspace),
        "model": model,
        "log_file": str(log_file),
    }
    skip_model = not model or model == "auto"
    argv: list[str] = []
    for token in tokens:
        if skip_model and "{model}" in token:
            if argv and argv[-1].startswith("-"):
                argv.pop()
            continue
        argv.append(PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], token))
    return argv, expects_stdin and not uses_prompt


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, os_signal.SIGTERM)
        else:
            process.terminate()
        process.wait(timeout=WORKER_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(process.pid, os_signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


def resolve_signal(
    governing: Optional[Signal],
    exit_code: Optional[int],
    launch_error: Optional[str] = None,
) -> Signal:
    """Pick the one signal that describes an invocation.

    A worker-reported terminal signal wins; otherwise a failed process is an
    ERROR and a clean exit without a marker is UNCLASSIFIED.
    """
    if governing is not None:
        return governing
    if launch_error is not None or exit_code not in (0, None):
        return Signal(SignalKind.ERROR)
    return Signal(SignalKind.UNCLASSIFIED)


class AgentProcessWorker:
    """Run the configured agent CLI as a subprocess and classify its output."""

    def __init__(
        self,
        command_template: str = DEFAULT_WORKER_COMMAND,
        *,
        warn_threshold: int = DEFAULT_WARN_THRESHOLD,
        rotate_threshold: int = DEFAULT_ROTATE_THRESHOLD,
        on_signal: Optional[Callable[[Signal], None]] = None,
    ):
        self.command_template = command_template
        self.warn_threshold = warn_threshold
        self.rotate_threshold = rotate_threshold
        self.on_signal = on_signal
        self._active: set[subprocess.Popen] = set()
        self._active_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RunnerConfig) -> "AgentProcessWorker":
        return cls(
            config.worker_command,
            warn_threshold=config.warn_threshold,
            rotate_threshold=config.rotate_threshold,
        )

    @property
    def executable(self) -> str:
        try:
            tokens = shlex.split(self.command_template)
        except ValueError:
            return ""
        return tokens[0] if tokens else ""

    def invoke(self, request: WorkRequest) -> InvocationResult:
        request.log_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path = request.log_path.with_suffix(".prompt.txt")
        prompt_path.write_text(request.prompt, encoding="utf-8")

        argv, feed_stdin = _format_command(
            self.command_template,
            prompt=request.prompt,
            prompt_file=prompt_path,
            workspace=request.workspace,
            model=request.model,
            log_file=request.log_path,
        )
        classifier = OutputClassifier(self.warn_threshold, self.rotate_threshold)
        governing: Optional[Signal] = None
        advisories: list[Signal] = []

        with open(request.log_path, "a", encoding="utf-8") as log_handle:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=request.workspace,
                    stdin=subprocess.PIPE if feed_stdin else subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    bufsize=1,
                    start_new_session=os.name == "posix",
                )
            except OSError as exc:
                message = f"{exc.__class__.__name__}: {exc}"
                log_handle.write(f"[runner] failed to launch worker: {message}\n")
                logger.error("Failed to launch worker {}: {}", argv[0], message)
                return InvocationResult(
                    signal=resolve_signal(None, None, message),
                    exit_code=None,
                    log_path=request.log_path,
                    launch_error=message,
                )

            with self._active_lock:
                self._active.add(process)

            if feed_stdin and process.stdin:
                try:
                    process.stdin.write(request.prompt)
                    process.stdin.close()
                except BrokenPipeError:
                    pass

            assert process.stdout is not None
            for line in process.stdout:
                log_handle.write(line)
                log_handle.flush()
                for sig in classifier.feed(line):
                    if self.on_signal:
                        self.on_signal(sig)
                    if not sig.kind.is_terminal:
                        advisories.append(sig)
                        logger.warning(
                            "{}: context is getting large (~{} tokens)",
                            request.work_item.id,
                            classifier.estimated_tokens,
                        )
                        continue
                    if governing is not None:
                        logger.debug("Ignoring {} after {}", sig, governing)
                        continue
                    governing = sig
                    logger.info("{}: worker signalled {}", request.work_item.id, sig)
                    if request.stop_on_interrupt_signals and sig.kind in INTERRUPTING_SIGNALS:
                        _terminate(process)
            exit_code = process.wait()
            with self._active_lock:
                self._active.discard(process)

        signal = resolve_signal(governing, exit_code)
        if signal.kind is SignalKind.ERROR:
            logger.warning("{}: worker exited with code {}", request.work_item.id, exit_code)
        return InvocationResult(
            signal=signal,
            exit_code=exit_code,
            log_path=request.log_path,
            advisories=tuple(advisories),
            estimated_tokens=classifier.estimated_tokens,
        )

    def terminate_all(self) -> None:
        """Stop every worker process this instance has running."""
        with self._active_lock:
            processes = list(self._active)
        for process in processes:
            logger.warning("Terminating worker pid {}", process.pid)
            _terminate(process)

    def validate(self) -> None:
        """Check the command template without launching anything.

        Raises:
            WorkerError: If the template is unusable.
        """
        _format_command(
            self.command_template,
            prompt="",
            prompt_file=Path("prompt.txt"),
            workspace=Path("."),
            model="",
            log_file=Path("worker.log"),
        )
