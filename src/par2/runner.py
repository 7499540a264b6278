"""
Subprocess execution with readiness-polled pipes, timeouts, and cancellation.
"""

from __future__ import annotations

import logging
import os
import selectors
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from utils.errors import ToolExecutionError
from utils.instance_guard import is_pid_alive

DEFAULT_GRACE_SECONDS = 1.0
READ_CHUNK_BYTES = 65536


class CancelToken:
    """Thread-safe flag checked by the runner between reads."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class RunResult:
    """Outcome of one subprocess run."""

    success: bool
    exit_status: Optional[int]
    output: str
    pid: Optional[int]
    timed_out: bool = False
    cancelled: bool = False
    duration: float = 0.0


def terminate_process(pid: int, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> bool:
    """Send SIGTERM, then SIGKILL if the process outlives the grace period."""
    if not is_pid_alive(pid):
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not is_pid_alive(pid):
            return True
        time.sleep(0.05)
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    return True


def _stop_child(process: subprocess.Popen, grace_seconds: float) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_command(
    argv: Sequence[str],
    timeout: Optional[float] = None,
    cancel_token: Optional[CancelToken] = None,
    on_start: Optional[Callable[[int], None]] = None,
    cwd: Optional[str] = None,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
    logger: Optional[logging.Logger] = None,
) -> RunResult:
    """Run argv to completion, merging stdout and stderr without blocking reads."""
    log = logger or logging.getLogger("par2protect")
    started = time.monotonic()
    try:
        process = subprocess.Popen(
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as exc:
        raise ToolExecutionError(f"Failed to start {argv[0]}: {exc}", command=argv) from exc

    if on_start is not None:
        on_start(process.pid)

    chunks: list[bytes] = []
    timed_out = False
    cancelled = False
    selector = selectors.DefaultSelector()
    for stream in (process.stdout, process.stderr):
        if stream is not None:
            os.set_blocking(stream.fileno(), False)
            selector.register(stream, selectors.EVENT_READ)
    try:
        while selector.get_map():
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                break
            if timeout is not None and (time.monotonic() - started) > timeout:
                timed_out = True
                break
            for key, _ in selector.select(timeout=0.1):
                try:
                    data = os.read(key.fd, READ_CHUNK_BYTES)
                except BlockingIOError:
                    continue
                if not data:
                    selector.unregister(key.fileobj)
                    continue
                chunks.append(data)
        if timed_out or cancelled:
            _stop_child(process, grace_seconds)
        else:
            remaining = None
            if timeout is not None:
                remaining = max(timeout - (time.monotonic() - started), 0.0)
            try:
                process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                timed_out = True
                _stop_child(process, grace_seconds)
    finally:
        selector.close()
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                stream.close()

    exit_status = process.returncode
    output = b"".join(chunks).decode("utf-8", errors="replace")
    duration = time.monotonic() - started
    if timed_out:
        log.error("Command exceeded %.0fs and was stopped: %s", timeout or 0, argv[0])
    elif cancelled:
        log.warning("Command cancelled: %s (pid %s)", argv[0], process.pid)
    return RunResult(
        success=exit_status == 0 and not timed_out and not cancelled,
        exit_status=exit_status,
        output=output,
        pid=process.pid,
        timed_out=timed_out,
        cancelled=cancelled,
        duration=duration,
    )


class CommandRunner:
    """Run par2 commands with a wall-clock timeout, logging raw output to the tool log."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        logger: Optional[logging.Logger] = None,
        tool_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.timeout = timeout
        self.grace_seconds = grace_seconds
        self.logger = logger or logging.getLogger("par2protect")
        self.tool_logger = tool_logger or logging.getLogger("par2protect.tool")

    def run(
        self,
        argv: Sequence[str],
        cancel_token: Optional[CancelToken] = None,
        on_start: Optional[Callable[[int], None]] = None,
    ) -> RunResult:
        self.logger.debug("Running: %s", shlex.join(argv))
        result = run_command(
            argv,
            timeout=self.timeout,
            cancel_token=cancel_token,
            on_start=on_start,
            grace_seconds=self.grace_seconds,
            logger=self.logger,
        )
        self.tool_logger.debug(
            "%s exited %s after %.1fs\n%s", shlex.join(argv), result.exit_status, result.duration, result.output
        )
        if result.timed_out:
            raise ToolExecutionError(
                f"par2 exceeded the maximum execution time of {self.timeout:.0f}s",
                command=argv,
                exit_status=result.exit_status,
                output=result.output,
            )
        if result.cancelled:
            raise ToolExecutionError(
                "par2 was cancelled", command=argv, exit_status=result.exit_status, output=result.output
            )
        if result.exit_status is not None and result.exit_status < 0:
            raise ToolExecutionError(
                f"par2 was killed by signal {-result.exit_status}",
                command=argv,
                exit_status=result.exit_status,
                output=result.output,
            )
        return result
