"""
Persistence for the operation queue state machine.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Optional

from utils.errors import NotFoundError

from .store import Store, now_timestamp

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
SKIPPED = "skipped"
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED, SKIPPED)

# Lower runs first: removals free space and repairs fix damage before new work.
PRIORITY_SQL = """
    CASE operation_type
        WHEN 'remove' THEN 0
        WHEN 'repair' THEN 1
        WHEN 'protect' THEN 2
        WHEN 'verify' THEN 3
        ELSE 4
    END
"""


@dataclass(frozen=True)
class Operation:
    """A queue row with decoded parameters and result."""

    id: int
    operation_type: str
    parameters: dict
    status: str
    created_at: str
    started_at: Optional[str]
    completed_at: Optional[str]
    updated_at: Optional[str]
    result: Optional[Any]
    pid: Optional[int]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _decode_json(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _row_to_operation(row: sqlite3.Row) -> Operation:
    return Operation(
        id=int(row["id"]),
        operation_type=str(row["operation_type"]),
        parameters=_decode_json(row["parameters"]) or {},
        status=str(row["status"]),
        created_at=str(row["created_at"]),
        started_at=str(row["started_at"]) if row["started_at"] else None,
        completed_at=str(row["completed_at"]) if row["completed_at"] else None,
        updated_at=str(row["updated_at"]) if row["updated_at"] else None,
        result=_decode_json(row["result"]),
        pid=int(row["pid"]) if row["pid"] is not None else None,
    )


class OperationQueue:
    """Queue table queries; every transition is a conditional update."""

    def __init__(self, store: Store, logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger("par2protect")

    def add(self, operation_type: str, parameters: dict) -> int:
        now = now_timestamp()
        with self.store.transaction():
            self.store.execute(
                """
                INSERT INTO operation_queue (operation_type, parameters, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (operation_type, json.dumps(parameters), PENDING, now, now),
            )
            operation_id = self.store.last_insert_id()
        return operation_id

    def get(self, operation_id: int) -> Operation:
        row = self.store.query_one("SELECT * FROM operation_queue WHERE id = ?", (int(operation_id),))
        if row is None:
            raise NotFoundError(f"Operation not found: {operation_id}")
        return _row_to_operation(row)

    def list_operations(self, limit: Optional[int] = 10, status: Optional[str] = None) -> list[Operation]:
        query = "SELECT * FROM operation_queue"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_operation(row) for row in self.store.execute(query, params)]

    def active(self, recent_seconds: int = 60) -> list[Operation]:
        """Pending and processing rows plus rows that finished within recent_seconds."""
        cutoff = now_timestamp(-recent_seconds)
        rows = self.store.execute(
            """
            SELECT * FROM operation_queue
            WHERE status IN (?, ?)
               OR (status IN (?, ?, ?, ?) AND completed_at >= ?)
            ORDER BY created_at ASC, id ASC
            """,
            (PENDING, PROCESSING, *TERMINAL_STATUSES, cutoff),
        )
        return [_row_to_operation(row) for row in rows]

    def count(self, status: str) -> int:
        return int(
            self.store.scalar("SELECT COUNT(*) FROM operation_queue WHERE status = ?", (status,), default=0)
        )

    def claim_next(self, pid: int) -> Optional[Operation]:
        """Move the highest-priority pending row to processing, or return None."""
        now = now_timestamp()
        with self.store.transaction():
            row = self.store.query_one(
                f"""
                SELECT id FROM operation_queue
                WHERE status = ?
                ORDER BY {PRIORITY_SQL}, created_at ASC, id ASC
                LIMIT 1
                """,
                (PENDING,),
            )
            if row is None:
                return None
            operation_id = int(row["id"])
            self.store.execute(
                """
                UPDATE operation_queue
                SET status = ?, started_at = ?, updated_at = ?, pid = ?
                WHERE id = ? AND status = ?
                """,
                (PROCESSING, now, now, int(pid), operation_id, PENDING),
            )
            claimed = self.store.scalar("SELECT changes()", default=0)
        if not claimed:
            return None
        return self.get(operation_id)

    def set_pid(self, operation_id: int, pid: int) -> None:
        self.store.execute(
            "UPDATE operation_queue SET pid = ?, updated_at = ? WHERE id = ? AND status = ?",
            (int(pid), now_timestamp(), int(operation_id), PROCESSING),
        )

    def finish(self, operation_id: int, status: str, result: Any) -> bool:
        """Write a terminal status unless the row was already finished (e.g. cancelled)."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        now = now_timestamp()
        with self.store.transaction():
            self.store.execute(
                """
                UPDATE operation_queue
                SET status = ?, completed_at = ?, updated_at = ?, result = ?
                WHERE id = ? AND status = ?
                """,
                (status, now, now, json.dumps(result), int(operation_id), PROCESSING),
            )
            changed = self.store.scalar("SELECT changes()", default=0)
        return bool(changed)

    def cancel(self, operation_id: int, result: Any) -> bool:
        """Cancel a pending or processing row immediately."""
        now = now_timestamp()
        with self.store.transaction():
            self.store.execute(
                """
                UPDATE operation_queue
                SET status = ?, completed_at = ?, updated_at = ?, result = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (CANCELLED, now, now, json.dumps(result), int(operation_id), PENDING, PROCESSING),
            )
            changed = self.store.scalar("SELECT changes()", default=0)
        return bool(changed)

    def fail_stuck(self, older_than_seconds: int, message: str) -> int:
        cutoff = now_timestamp(-older_than_seconds)
        return self._fail_where("started_at < ?", (cutoff,), message)

    def fail_ids(self, operation_ids: list[int], message: str) -> int:
        if not operation_ids:
            return 0
        placeholders = ",".join("?" for _ in operation_ids)
        return self._fail_where(f"id IN ({placeholders})", tuple(int(value) for value in operation_ids), message)

    def cleanup(self, days: int = 7) -> int:
        """Delete finished rows whose completion is older than the retention window."""
        cutoff = now_timestamp(-days * 86400)
        with self.store.transaction():
            self.store.execute(
                f"""
                DELETE FROM operation_queue
                WHERE status IN ({",".join("?" for _ in TERMINAL_STATUSES)})
                  AND completed_at < ?
                """,
                (*TERMINAL_STATUSES, cutoff),
            )
            deleted = int(self.store.scalar("SELECT changes()", default=0))
        return deleted

    def _fail_where(self, clause: str, params: tuple, message: str) -> int:
        now = now_timestamp()
        with self.store.transaction():
            self.store.execute(
                f"""
                UPDATE operation_queue
                SET status = ?, completed_at = ?, updated_at = ?, result = ?
                WHERE status = ? AND {clause}
                """,
                (FAILED, now, now, json.dumps({"success": False, "error": message}), PROCESSING, *params),
            )
            changed = int(self.store.scalar("SELECT changes()", default=0))
        if changed:
            self.logger.warning("Marked %s processing operation(s) failed: %s", changed, message)
        return changed
