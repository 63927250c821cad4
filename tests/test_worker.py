"""Test worker command formatting and subprocess invocation."""

from __future__ import annotations

import sys
import textwrap
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner.models import Signal, SignalKind, WorkItem
from ralph_runner.worker import (
    AgentProcessWorker,
    WorkerError,
    WorkRequest,
    _format_command,
    resolve_signal,
)


def _format(template: str, model: str = "sonnet", prompt: str = "do it") -> tuple[list[str], bool]:
    return _format_command(
        template,
        prompt=prompt,
        prompt_file=Path("/tmp/prompt.txt"),
        workspace=Path("/repo"),
        model=model,
        log_file=Path("/tmp/worker.log"),
    )


def test_format_command_substitutes_placeholders_per_token() -> None:
    argv, feed_stdin = _format("agent --model {model} --workspace {workspace} {prompt}", prompt="line 1\nline 2")
    assert argv == ["agent", "--model", "sonnet", "--workspace", "/repo", "line 1\nline 2"]
    assert feed_stdin is False


def test_format_command_drops_model_flag_for_auto_or_empty() -> None:
    for model in ("", "auto"):
        argv, _ = _format("agent --model {model} -p {prompt}", model=model)
        assert argv == ["agent", "-p", "do it"]


def test_format_command_reads_prompt_from_stdin_with_dash() -> None:
    argv, feed_stdin = _format("agent exec -")
    assert argv == ["agent", "exec", "-"]
    assert feed_stdin is True


def test_format_command_rejects_unknown_placeholders_and_missing_prompt() -> None:
    with pytest.raises(WorkerError, match="Unknown placeholder"):
        _format("agent {prompt} {secret}")
    with pytest.raises(WorkerError, match="must include"):
        _format("agent --model {model}")
    with pytest.raises(WorkerError, match="empty"):
        _format("   ")


def test_resolve_signal_prefers_reported_signal() -> None:
    done = Signal(SignalKind.US_DONE, "US-1")
    assert resolve_signal(done, 1) == done
    assert resolve_signal(None, 0).kind is SignalKind.UNCLASSIFIED
    assert resolve_signal(None, 2).kind is SignalKind.ERROR
    assert resolve_signal(None, None, "FileNotFoundError").kind is SignalKind.ERROR


def _script(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "fake_agent.py"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def _request(tmp_path: Path, prompt: str = "Implement US-001") -> WorkRequest:
    return WorkRequest(
        work_item=WorkItem(id="US-001", title="First"),
        workspace=tmp_path,
        prompt=prompt,
        log_path=tmp_path / "logs" / "US-001.log",
        model="auto",
    )


def test_invoke_reports_completion_marker(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        """
        import sys
        prompt = open(sys.argv[1], encoding="utf-8").read()
        print("received", len(prompt), flush=True)
        print("<ralph>US-DONE US-001</ralph>", flush=True)
        """,
    )
    worker = AgentProcessWorker(f"{sys.executable} {script} {{prompt_file}}")

    result = worker.invoke(_request(tmp_path))

    assert result.signal == Signal(SignalKind.US_DONE, "US-001")
    assert result.exit_code == 0
    assert not result.failed
    log_text = result.log_path.read_text(encoding="utf-8")
    assert "received" in log_text
    assert (tmp_path / "logs" / "US-001.prompt.txt").read_text(encoding="utf-8") == "Implement US-001"


def test_invoke_nonzero_exit_without_marker_is_error(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        """
        import sys
        print("boom", file=sys.stderr, flush=True)
        sys.exit(3)
        """,
    )
    worker = AgentProcessWorker(f"{sys.executable} {script} {{prompt}}")

    result = worker.invoke(_request(tmp_path))

    assert result.signal.kind is SignalKind.ERROR
    assert result.exit_code == 3
    assert result.failed
    assert "boom" in result.log_path.read_text(encoding="utf-8")


def test_invoke_first_terminal_signal_governs(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        """
        print("<ralph>GUTTER</ralph>", flush=True)
        print("<ralph>US-DONE US-001</ralph>", flush=True)
        """,
    )
    worker = AgentProcessWorker(f"{sys.executable} {script} {{prompt}}")

    assert worker.invoke(_request(tmp_path)).signal.kind is SignalKind.GUTTER


def test_invoke_stops_worker_on_rotate(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        """
        import time
        print("<ralph>ROTATE</ralph>", flush=True)
        time.sleep(60)
        """,
    )
    seen: list[Signal] = []
    worker = AgentProcessWorker(f"{sys.executable} {script} {{prompt}}", on_signal=seen.append)

    started = time.monotonic()
    result = worker.invoke(_request(tmp_path))

    assert result.signal.kind is SignalKind.ROTATE
    assert time.monotonic() - started < 30
    assert seen == [Signal(SignalKind.ROTATE)]


def test_invoke_reports_launch_failure(tmp_path: Path) -> None:
    worker = AgentProcessWorker(f"{tmp_path / 'missing-agent'} {{prompt}}")

    result = worker.invoke(_request(tmp_path))

    assert result.signal.kind is SignalKind.ERROR
    assert result.exit_code is None
    assert result.launch_error is not None
    assert "failed to launch" in result.log_path.read_text(encoding="utf-8")


def test_validate_and_executable() -> None:
    worker = AgentProcessWorker("my-agent --model {model} {prompt}")
    worker.validate()
    assert worker.executable == "my-agent"

    with pytest.raises(WorkerError):
        AgentProcessWorker("my-agent {nope} {prompt}").validate()
