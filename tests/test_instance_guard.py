import os
from pathlib import Path

import pytest

from utils import instance_guard
from utils.instance_guard import (
    InstanceLockError,
    PidFileElection,
    acquire_instance_lock,
    read_lock_pid,
)


def test_release_keeps_lock_file_and_clears_pid(tmp_path: Path) -> None:
    lock_path = tmp_path / "run" / "processor.lock"
    election = PidFileElection(lock_path)

    election.acquire()
    inode = lock_path.stat().st_ino
    assert election.leader_pid() == os.getpid()
    assert election.is_leader_alive()

    election.release()
    assert lock_path.stat().st_ino == inode
    assert election.leader_pid() is None
    assert not election.is_leader_alive()

    election.acquire()
    assert lock_path.stat().st_ino == inode
    assert election.leader_pid() == os.getpid()
    election.release()


def test_second_election_is_refused_while_lock_is_held(tmp_path: Path) -> None:
    lock_path = tmp_path / "processor.lock"
    first = PidFileElection(lock_path)
    second = PidFileElection(lock_path)

    first.acquire()
    with pytest.raises(InstanceLockError):
        second.acquire()

    first.release()
    second.acquire()
    assert second.leader_pid() == os.getpid()
    second.release()


def test_replaced_lock_file_is_reopened(tmp_path: Path, monkeypatch) -> None:
    lock_path = tmp_path / "processor.lock"
    real_lock_file = instance_guard._lock_file
    calls: list = []

    def replace_then_lock(handle) -> None:
        calls.append(handle)
        if len(calls) == 1:
            lock_path.unlink()
            lock_path.write_text("", encoding="utf-8")
        real_lock_file(handle)

    monkeypatch.setattr(instance_guard, "_lock_file", replace_then_lock)

    lock = acquire_instance_lock(lock_path)
    try:
        assert len(calls) == 2
        assert calls[0].closed
        assert os.fstat(lock.handle.fileno()).st_ino == lock_path.stat().st_ino
        assert read_lock_pid(lock_path) == os.getpid()
    finally:
        lock.release()


def test_lock_file_that_never_settles_is_an_error(tmp_path: Path, monkeypatch) -> None:
    lock_path = tmp_path / "processor.lock"
    real_lock_file = instance_guard._lock_file

    def always_replace(handle) -> None:
        lock_path.unlink()
        lock_path.write_text("", encoding="utf-8")
        real_lock_file(handle)

    monkeypatch.setattr(instance_guard, "_lock_file", always_replace)

    with pytest.raises(InstanceLockError, match="kept changing"):
        acquire_instance_lock(lock_path, attempts=2)
