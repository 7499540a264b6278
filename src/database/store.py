"""
SQLite connection wrapper with locked-database retry and explicit transactions.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

from utils.errors import StorageError

DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_INITIAL_RETRY_DELAY_MS = 50
DEFAULT_MAX_RETRY_DELAY_MS = 1000
DEFAULT_MAX_RETRIES = 5
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def backoff_delays(
    retries: int = DEFAULT_MAX_RETRIES,
    initial_ms: int = DEFAULT_INITIAL_RETRY_DELAY_MS,
    max_ms: int = DEFAULT_MAX_RETRY_DELAY_MS,
) -> list[int]:
    """Return the wait in milliseconds before each retry of a locked statement."""
    delays = []
    delay = initial_ms
    for _ in range(max(retries, 0)):
        delays.append(min(delay, max_ms))
        delay = min(delay * 2, max_ms)
    return delays


def is_locked_error(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "database is locked" in str(exc)


class Store:
    """One SQLite database file with retrying statements and nested transactions."""

    def __init__(
        self,
        db_path: Path,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        initial_retry_delay_ms: int = DEFAULT_INITIAL_RETRY_DELAY_MS,
        max_retry_delay_ms: int = DEFAULT_MAX_RETRY_DELAY_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.initial_retry_delay_ms = initial_retry_delay_ms
        self.max_retry_delay_ms = max_retry_delay_ms
        self.max_retries = max_retries
        self.logger = logger or logging.getLogger("par2protect")
        self._sleep = sleep
        self._conn: Optional[sqlite3.Connection] = None
        self._depth = 0

    def connect(self) -> sqlite3.Connection:
        """Open the connection and apply journaling pragmas if not already open."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=self.busy_timeout_ms / 1000.0,
                    isolation_level=None,
                    check_same_thread=False,
                )
            except sqlite3.Error as exc:
                raise StorageError(f"Unable to open database {self.db_path}: {exc}") from exc
            conn.row_factory = sqlite3.Row
            self._conn = conn
            self._run_with_retry(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}", ())
            self._run_with_retry("PRAGMA journal_mode = WAL", ())
            self._run_with_retry("PRAGMA synchronous = NORMAL", ())
            self._run_with_retry("PRAGMA foreign_keys = ON", ())
        return self._conn

    def close(self) -> None:
        """Close the connection if it is open."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._depth = 0

    def execute(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run one statement and return all result rows."""
        self.connect()
        return self._run_with_retry(sql, params)

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self.execute(sql, params)
        return rows[0] if rows else None

    def scalar(self, sql: str, params: Sequence[Any] = (), default: Any = None) -> Any:
        row = self.query_one(sql, params)
        if row is None or row[0] is None:
            return default
        return row[0]

    def last_insert_id(self) -> int:
        return int(self.scalar("SELECT last_insert_rowid()", default=0))

    def table_exists(self, name: str) -> bool:
        row = self.query_one(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (name,),
        )
        return row is not None

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin(self) -> None:
        """Start a write transaction; nested calls only increase the depth."""
        self.connect()
        if self._depth == 0:
            self._run_with_retry("BEGIN IMMEDIATE", ())
        self._depth += 1

    def commit(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self._run_with_retry("COMMIT", ())

    def rollback(self) -> None:
        if self._depth == 0:
            return
        self._depth = 0
        if self._conn is not None and self._conn.in_transaction:
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                raise StorageError(f"Rollback failed: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        """Run the enclosed block in one transaction, rolling back on any exception."""
        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def _run_with_retry(self, sql: str, params: Sequence[Any]) -> list[sqlite3.Row]:
        conn = self._conn
        if conn is None:
            raise StorageError("Database connection is not open")
        delays = backoff_delays(self.max_retries, self.initial_retry_delay_ms, self.max_retry_delay_ms)
        attempt = 0
        while True:
            try:
                cursor = conn.execute(sql, tuple(params))
                return cursor.fetchall()
            except sqlite3.Error as exc:
                if not is_locked_error(exc):
                    raise StorageError(f"Database error: {exc}") from exc
                if attempt >= len(delays):
                    self.logger.error(
                        "Database still locked after %s retries: %s", len(delays), self.db_path
                    )
                    raise StorageError(
                        f"Database is locked after {len(delays)} retries: {self.db_path}"
                    ) from exc
                delay_ms = delays[attempt]
                attempt += 1
                self.logger.warning(
                    "Database locked, retrying in %sms (%s/%s)", delay_ms, attempt, len(delays)
                )
                self._sleep(delay_ms / 1000.0)


def now_timestamp(offset_seconds: float = 0.0) -> str:
    """Return local time formatted the way rows store timestamps."""
    return time.strftime(TIMESTAMP_FORMAT, time.localtime(time.time() + offset_seconds))
