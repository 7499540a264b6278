"""
Single-processor election through a PID lock file.
"""

from __future__ import annotations

import fcntl
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, TextIO


class InstanceLockError(RuntimeError):
    """Raised when another instance is already running."""


@dataclass(frozen=True)
class InstanceLock:
    """Holds the lock file handle to keep the lock alive."""

    handle: TextIO
    path: Path

    def release(self) -> None:
        if self.handle.closed:
            return
        try:
            fcntl.flock(self.handle.fileno(), fcntl.LOCK_UN)
        finally:
            self.handle.close()


class LeaderElection(Protocol):
    """Decides which process may drain the queue."""

    def acquire(self) -> InstanceLock: ...

    def release(self) -> None: ...

    def leader_pid(self) -> Optional[int]: ...

    def is_leader_alive(self) -> bool: ...


def is_pid_alive(pid: Optional[int]) -> bool:
    """Return True when a process with this pid exists."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_lock_pid(lock_path: Path) -> Optional[int]:
    """Return the pid recorded in a lock file, if any."""
    try:
        content = lock_path.read_text(encoding="utf-8")
    except OSError:
        return None
    for line in content.splitlines():
        key, _, value = line.partition("=")
        if key.strip() == "pid" and value.strip().isdigit():
            return int(value.strip())
    return None


def _lock_file(handle: TextIO) -> None:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        raise InstanceLockError("Another instance is already running.") from exc


def _write_lock_info(handle: TextIO) -> None:
    handle.seek(0)
    handle.truncate()
    info = [
        f"pid={os.getpid()}",
        f"python={sys.executable}",
        f"argv={' '.join(sys.argv)}",
    ]
    handle.write("\n".join(info))
    handle.flush()


def _is_current_file(handle: TextIO, lock_path: Path) -> bool:
    try:
        return os.fstat(handle.fileno()).st_ino == os.stat(lock_path).st_ino
    except FileNotFoundError:
        return False


def acquire_instance_lock(lock_path: Path, attempts: int = 3) -> InstanceLock:
    """Acquire a non-blocking instance lock or raise InstanceLockError.

    The lock only counts when the locked handle is still the file at ``lock_path``;
    a file replaced between open and flock is reopened.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for _ in range(attempts):
        handle = lock_path.open("a+", encoding="utf-8")
        try:
            _lock_file(handle)
            if not _is_current_file(handle, lock_path):
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                handle.close()
                continue
            _write_lock_info(handle)
        except Exception:
            handle.close()
            raise
        return InstanceLock(handle=handle, path=lock_path)
    raise InstanceLockError(f"Lock file kept changing: {lock_path}")


class PidFileElection:
    """Leader election backed by flock plus a recorded pid."""

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._lock: Optional[InstanceLock] = None

    def acquire(self) -> InstanceLock:
        """Become the leader or raise InstanceLockError if a live leader holds the lock."""
        if self._lock is None:
            self._lock = acquire_instance_lock(self.lock_path)
        return self._lock

    def release(self) -> None:
        """Clear the recorded pid, then unlock; the file itself stays in place."""
        if self._lock is None:
            return
        try:
            handle = self._lock.handle
            handle.seek(0)
            handle.truncate()
            handle.flush()
        finally:
            self._lock.release()
            self._lock = None

    def leader_pid(self) -> Optional[int]:
        return read_lock_pid(self.lock_path)

    def is_leader_alive(self) -> bool:
        """An empty or missing lock file, or a dead recorded pid, allows re-election."""
        return is_pid_alive(self.leader_pid())
