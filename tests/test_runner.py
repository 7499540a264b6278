import subprocess
import threading
import time
from pathlib import Path

import pytest

from par2 import CancelToken, CommandRunner, run_command, terminate_process
from utils.errors import ToolExecutionError


def test_large_output_does_not_deadlock() -> None:
    # Far more than a pipe buffer on both streams.
    script = "head -c 300000 /dev/zero | tr '\\0' 'a'; head -c 200000 /dev/zero | tr '\\0' 'b' >&2"
    result = run_command(["/bin/sh", "-c", script], timeout=30)

    assert result.success is True
    assert result.exit_status == 0
    assert result.output.count("a") == 300000
    assert result.output.count("b") == 200000


def test_exit_status_and_pid_reported() -> None:
    started: list = []
    result = run_command(["/bin/sh", "-c", "echo out; echo err >&2; exit 3"], on_start=started.append)

    assert result.success is False
    assert result.exit_status == 3
    assert "out" in result.output and "err" in result.output
    assert started == [result.pid]


def test_timeout_stops_child() -> None:
    started = time.monotonic()
    result = run_command(["/bin/sh", "-c", "exec sleep 30"], timeout=0.5, grace_seconds=0.5)

    assert result.timed_out is True
    assert result.success is False
    assert time.monotonic() - started < 10

    runner = CommandRunner(timeout=0.5, grace_seconds=0.5)
    with pytest.raises(ToolExecutionError, match="maximum execution time"):
        runner.run(["/bin/sh", "-c", "exec sleep 30"])


def test_cancel_token_stops_child() -> None:
    token = CancelToken()
    timer = threading.Timer(0.3, token.cancel)
    timer.start()
    try:
        result = run_command(["/bin/sh", "-c", "exec sleep 30"], cancel_token=token, grace_seconds=0.5)
    finally:
        timer.cancel()

    assert result.cancelled is True
    assert result.success is False


def test_runner_raises_when_killed_or_missing(tmp_path: Path) -> None:
    runner = CommandRunner(timeout=10)
    with pytest.raises(ToolExecutionError, match="signal"):
        runner.run(["/bin/sh", "-c", "kill -9 $$"])
    with pytest.raises(ToolExecutionError, match="Failed to start"):
        runner.run([str(tmp_path / "no-such-par2"), "v"])
    assert runner.run(["/bin/sh", "-c", "exit 1"]).exit_status == 1


def test_terminate_process_escalates() -> None:
    process = subprocess.Popen(["/bin/sh", "-c", "trap '' TERM; while :; do sleep 0.1; done"])
    try:
        time.sleep(0.2)
        assert terminate_process(process.pid, grace_seconds=0.3) is True
        assert process.wait(timeout=5) == -9
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()


def test_terminate_process_ignores_dead_pid() -> None:
    process = subprocess.Popen(["/bin/sh", "-c", "exit 0"])
    process.wait()
    assert terminate_process(process.pid, grace_seconds=0.1) is False
