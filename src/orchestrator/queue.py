"""
Enqueue API and read-only queue views consumed by the web layer and CLI.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional

from database import DatabaseManager, Operation, OperationQueue
from database.queue import CANCELLED, PROCESSING
from par2 import terminate_process
from par2.models import OPERATION_TYPES
from utils.errors import ValidationError
from utils.instance_guard import LeaderElection

CANCEL_MESSAGE = "Operation cancelled by user"

ProcessorLauncher = Callable[[], None]


def spawn_processor(config_path: Optional[Path] = None) -> None:
    """Start ``main.py process`` detached from the caller's session."""
    argv = [sys.executable, str(Path(__file__).resolve().parent.parent / "main.py"), "process"]
    if config_path is not None:
        argv.extend(["--config", str(config_path)])
    subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


def format_operation(operation: Operation) -> dict:
    """Flatten an operation for API/CLI output, surfacing its path and item id."""
    parameters = operation.parameters or {}
    return {
        "id": operation.id,
        "operation_type": operation.operation_type,
        "status": operation.status,
        "parameters": parameters,
        "path": parameters.get("path"),
        "item_id": parameters.get("id"),
        "created_at": operation.created_at,
        "started_at": operation.started_at,
        "completed_at": operation.completed_at,
        "updated_at": operation.updated_at,
        "result": operation.result,
        "pid": operation.pid,
    }


class QueueService:
    """Add, inspect, cancel, and purge queue operations."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        election: LeaderElection,
        launcher: Optional[ProcessorLauncher] = None,
        grace_seconds: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.db_manager = db_manager
        self.queue = OperationQueue(db_manager.queue, logger=logger)
        self.election = election
        self.launcher = launcher or spawn_processor
        self.grace_seconds = grace_seconds
        self.logger = logger or logging.getLogger("par2protect")

    def add_operation(
        self, operation_type: str, parameters: Optional[dict] = None, start_processor: bool = True
    ) -> dict:
        """Validate and enqueue an operation, then make sure a processor is running."""
        parameters = dict(parameters or {})
        if operation_type not in OPERATION_TYPES:
            raise ValidationError(f"Invalid operation type: {operation_type}")
        if not parameters.get("path") and parameters.get("id") in (None, ""):
            raise ValidationError("Either path or id parameter is required")
        operation_id = self.queue.add(operation_type, parameters)
        self.logger.info(
            "Queued %s operation %s for %s",
            operation_type,
            operation_id,
            parameters.get("path") or f"item {parameters.get('id')}",
        )
        if start_processor:
            self.ensure_processor()
        return {"success": True, "operation_id": operation_id, "message": "Operation added to queue"}

    def ensure_processor(self) -> bool:
        """Launch a processor unless the recorded leader is alive; True if launched."""
        if self.election.is_leader_alive():
            self.logger.debug("Queue processor already running (pid %s)", self.election.leader_pid())
            return False
        self.logger.debug("Starting queue processor")
        self.launcher()
        return True

    def get_operation_status(self, operation_id: int) -> dict:
        return format_operation(self.queue.get(operation_id))

    def get_all_operations(self, limit: Optional[int] = 10, status: Optional[str] = None) -> list[dict]:
        return [format_operation(op) for op in self.queue.list_operations(limit=limit, status=status)]

    def get_active_operations(self) -> list[dict]:
        return [format_operation(op) for op in self.queue.active()]

    def cancel_operation(self, operation_id: int) -> dict:
        """Cancel immediately; signal the par2 subprocess of a processing row."""
        operation = self.queue.get(operation_id)
        if operation.is_terminal:
            raise ValidationError(f"Operation {operation_id} already {operation.status}")
        result = {"success": False, "error": CANCEL_MESSAGE}
        if not self.queue.cancel(operation_id, result):
            current = self.queue.get(operation_id)
            raise ValidationError(f"Operation {operation_id} already {current.status}")
        signalled = False
        pid = self.queue.get(operation_id).pid
        if operation.status == PROCESSING and pid and pid != self.election.leader_pid():
            signalled = terminate_process(pid, self.grace_seconds)
        self.logger.info("Cancelled operation %s (signalled=%s)", operation_id, signalled)
        return {"success": True, "operation_id": operation_id, "status": CANCELLED, "signalled": signalled}

    def cleanup_old_operations(self, days: int = 7) -> int:
        deleted = self.queue.cleanup(days)
        if deleted:
            self.logger.info("Removed %s queue operations older than %s days", deleted, days)
        return deleted
