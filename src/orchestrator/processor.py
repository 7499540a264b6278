"""
Single-flight queue processor: admission, claim, dispatch, and result persistence.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Dict, Optional

from database import DatabaseManager, Operation, OperationQueue, Store
from database.queue import CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING, SKIPPED
from operations import OperationResult, RunContext
from par2 import CancelToken
from utils.errors import (
    ClassificationUnknown,
    Par2FilesExist,
    Par2ProtectError,
    ResourceUnavailable,
    ToolExecutionError,
)
from utils.instance_guard import InstanceLockError, LeaderElection
from utils.resource_monitor import ResourceMonitor

Handler = Callable[[dict, RunContext], OperationResult]

INVALID_PARAMETERS = "Invalid parameters: Either path or id parameter is required"
STUCK_MESSAGE = "Operation timed out or was interrupted"
TERMINATED_MESSAGE = "Operation terminated unexpectedly during processing"
OUTPUT_TAIL_LINES = 20


class CancellationWatcher:
    """Poll one queue row on its own connection and trip the token once it is cancelled."""

    def __init__(
        self,
        db_path,
        operation_id: int,
        token: CancelToken,
        interval_seconds: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.db_path = db_path
        self.operation_id = operation_id
        self.token = token
        self.interval_seconds = interval_seconds
        self.logger = logger or logging.getLogger("par2protect")
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"cancel-watch-{operation_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=self.interval_seconds * 2)

    def _run(self) -> None:
        store = Store(self.db_path, logger=self.logger)
        try:
            while not self._stop.wait(self.interval_seconds):
                try:
                    status = store.scalar(
                        "SELECT status FROM operation_queue WHERE id = ?", (self.operation_id,)
                    )
                except Par2ProtectError as exc:
                    self.logger.warning("Cancellation check failed for %s: %s", self.operation_id, exc)
                    continue
                if status == CANCELLED:
                    self.logger.info("Operation %s cancelled, stopping par2", self.operation_id)
                    self.token.cancel()
                    return
        finally:
            store.close()


class QueueProcessor:
    """Drain pending operations one at a time under resource and concurrency gates."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        election: LeaderElection,
        handlers: Dict[str, Handler],
        resource_monitor: Optional[ResourceMonitor] = None,
        max_concurrent: int = 2,
        max_execution_time: float = 1800.0,
        stuck_timeout_seconds: int = 3600,
        poll_interval_seconds: float = 5.0,
        watch_interval_seconds: float = 1.0,
        logger: Optional[logging.Logger] = None,
        performance_logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_manager = db_manager
        self.queue = OperationQueue(db_manager.queue, logger=logger)
        self.election = election
        self.handlers = handlers
        self.resource_monitor = resource_monitor
        self.max_concurrent = max(1, int(max_concurrent))
        self.max_execution_time = max_execution_time
        self.stuck_timeout_seconds = stuck_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.watch_interval_seconds = watch_interval_seconds
        self.logger = logger or logging.getLogger("par2protect")
        self.performance_logger = performance_logger or logging.getLogger("par2protect.performance")
        self._clock = clock
        self._sleep = sleep
        self._in_flight: list[int] = []
        self.pid = os.getpid()

    def run(self) -> int:
        """Elect, recover stuck rows, and drain the queue; return the number processed.

        Pending rows are counted again after the lock is released: an enqueue that
        saw this processor alive just before it let go did not launch another one.
        """
        deadline = self._clock() + self.max_execution_time
        processed = 0
        while True:
            try:
                self.election.acquire()
            except InstanceLockError:
                self.logger.info("Queue processor already running (pid %s)", self.election.leader_pid())
                break
            try:
                processed += self._drain(deadline)
            finally:
                if self._in_flight:
                    self.queue.fail_ids(self._in_flight, TERMINATED_MESSAGE)
                    self._in_flight.clear()
                self.election.release()
            if self._clock() >= deadline or self.queue.count(PENDING) == 0:
                break
            self.logger.info("Operations were queued while the processor was stopping; resuming")
        self.logger.info("Queue processor finished after %s operation(s)", processed)
        return processed

    def _drain(self, deadline: float) -> int:
        processed = 0
        self.queue.fail_stuck(self.stuck_timeout_seconds, STUCK_MESSAGE)
        while self._clock() < deadline:
            if self.queue.count(PENDING) == 0:
                break
            try:
                status = self.run_once()
            except ResourceUnavailable as exc:
                self.logger.info("Waiting for resources: %s", "; ".join(exc.reasons) or exc)
                self._sleep(self.poll_interval_seconds)
                continue
            if status is not None:
                processed += 1
        else:
            remaining = self.queue.count(PENDING)
            if remaining:
                self.logger.warning(
                    "Processor reached max execution time with %s pending operation(s)", remaining
                )
        return processed

    def admit(self) -> None:
        """Raise ResourceUnavailable unless a new operation may start now."""
        processing = self.queue.count(PROCESSING)
        if processing >= self.max_concurrent:
            raise ResourceUnavailable(
                "Concurrency limit reached",
                [f"{processing} operation(s) processing, limit {self.max_concurrent}"],
            )
        if self.resource_monitor is not None:
            availability = self.resource_monitor.check_availability()
            if not availability.available:
                raise ResourceUnavailable("System resources exhausted", availability.reasons)

    def run_once(self) -> Optional[str]:
        """Admit, claim, and process one operation; None when nothing was pending."""
        self.admit()
        operation = self.queue.claim_next(self.pid)
        if operation is None:
            return None
        return self.process(operation)

    def process(self, operation: Operation) -> str:
        self._in_flight.append(operation.id)
        started = self._clock()
        token = CancelToken()
        watcher = CancellationWatcher(
            self.db_manager.queue.db_path,
            operation.id,
            token,
            interval_seconds=self.watch_interval_seconds,
            logger=self.logger,
        )
        context = RunContext(
            cancel_token=token,
            on_start=lambda pid: self.queue.set_pid(operation.id, pid),
        )
        self.logger.info("Processing %s operation %s", operation.operation_type, operation.id)
        watcher.start()
        try:
            status, result = self._execute(operation, context)
        finally:
            watcher.stop()

        try:
            finished = self.queue.finish(operation.id, status, result)
        except Par2ProtectError as exc:
            self.logger.error("Could not record result of operation %s: %s", operation.id, exc)
            return FAILED
        self._in_flight.remove(operation.id)
        if not finished:
            status = self.queue.get(operation.id).status
            self.logger.info("Operation %s was already %s", operation.id, status)
        self.performance_logger.info(
            "operation=%s type=%s status=%s seconds=%.2f",
            operation.id,
            operation.operation_type,
            status,
            self._clock() - started,
        )
        return status

    def _execute(self, operation: Operation, context: RunContext) -> tuple[str, dict]:
        parameters = operation.parameters or {}
        handler = self.handlers.get(operation.operation_type)
        if handler is None:
            return FAILED, _error(f"Unsupported operation type: {operation.operation_type}")
        if not parameters.get("path") and parameters.get("id") in (None, ""):
            return FAILED, _error(INVALID_PARAMETERS)
        try:
            result = handler(parameters, context)
        except Par2FilesExist as exc:
            self.logger.info("Operation %s skipped: %s", operation.id, exc)
            return SKIPPED, {"success": True, "skipped": True, "message": str(exc)}
        except ClassificationUnknown as exc:
            self.logger.error("Operation %s produced unrecognized output: %s", operation.id, exc)
            return FAILED, _error(str(exc), output=exc.output)
        except ToolExecutionError as exc:
            self.logger.error("Operation %s failed: %s", operation.id, exc)
            return FAILED, _error(str(exc), output=exc.output, exit_status=exc.exit_status)
        except Par2ProtectError as exc:
            self.logger.error("Operation %s failed: %s", operation.id, exc)
            return FAILED, _error(str(exc))
        except Exception as exc:
            self.logger.exception("Operation %s crashed", operation.id)
            return FAILED, _error(f"{type(exc).__name__}: {exc}")
        if result.skipped:
            return SKIPPED, result.to_dict()
        return (COMPLETED if result.success else FAILED), result.to_dict()


def _error(message: str, output: str = "", exit_status: Optional[int] = None) -> dict:
    payload: dict = {"success": False, "error": message}
    if exit_status is not None:
        payload["exit_status"] = exit_status
    if output:
        payload["output"] = "\n".join(output.strip().splitlines()[-OUTPUT_TAIL_LINES:])
    return payload
