import os
from pathlib import Path

import pytest

from database import DatabaseManager, OperationQueue
from database.queue import CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING
from orchestrator.queue import QueueService
from utils.errors import NotFoundError, ValidationError


class FakeElection:
    def __init__(self, alive: bool = False, pid=None) -> None:
        self.alive = alive
        self.pid = pid

    def acquire(self):
        return None

    def release(self) -> None:
        return None

    def leader_pid(self):
        return self.pid

    def is_leader_alive(self) -> bool:
        return self.alive


def build_service(root: Path, election=None) -> tuple[QueueService, list]:
    manager = DatabaseManager({"main": root / "par2protect.db", "queue": root / "queue.db"})
    manager.initialize()
    launches: list = []
    service = QueueService(manager, election or FakeElection(), launcher=lambda: launches.append(1))
    return service, launches


def test_add_operation_validates_and_starts_processor(tmp_path: Path) -> None:
    service, launches = build_service(tmp_path)

    with pytest.raises(ValidationError, match="Invalid operation type: compress"):
        service.add_operation("compress", {"path": "/data"})
    with pytest.raises(ValidationError, match="Either path or id parameter is required"):
        service.add_operation("verify", {"redundancy": 10})
    assert launches == []

    response = service.add_operation("protect", {"path": "/data", "redundancy": 10})
    assert response["success"] is True
    assert launches == [1]

    status = service.get_operation_status(response["operation_id"])
    assert status["status"] == PENDING
    assert status["path"] == "/data"
    assert status["parameters"] == {"path": "/data", "redundancy": 10}

    response = service.add_operation("verify", {"id": 3})
    assert service.get_operation_status(response["operation_id"])["item_id"] == 3
    with pytest.raises(NotFoundError):
        service.get_operation_status(999)


def test_live_processor_is_not_relaunched(tmp_path: Path) -> None:
    service, launches = build_service(tmp_path, FakeElection(alive=True, pid=4242))
    service.add_operation("verify", {"path": "/data"})
    assert launches == []


def test_claim_order_follows_priority_then_age(tmp_path: Path) -> None:
    service, _ = build_service(tmp_path)
    queue = service.queue
    verify_id = queue.add("verify", {"path": "/a"})
    protect_id = queue.add("protect", {"path": "/b"})
    remove_id = queue.add("remove", {"path": "/c"})
    repair_id = queue.add("repair", {"path": "/d"})
    second_verify_id = queue.add("verify", {"path": "/e"})

    claimed = []
    while True:
        operation = queue.claim_next(pid=111)
        if operation is None:
            break
        assert operation.status == PROCESSING
        assert operation.pid == 111
        assert operation.started_at is not None
        claimed.append(operation.id)

    assert claimed == [remove_id, repair_id, protect_id, verify_id, second_verify_id]


def test_finish_only_applies_to_processing_rows(tmp_path: Path) -> None:
    service, _ = build_service(tmp_path)
    queue = service.queue
    operation_id = queue.add("verify", {"path": "/a"})

    assert queue.finish(operation_id, COMPLETED, {"success": True}) is False
    queue.claim_next(pid=1)
    queue.set_pid(operation_id, 2222)
    assert queue.get(operation_id).pid == 2222
    assert queue.finish(operation_id, COMPLETED, {"success": True}) is True
    assert queue.finish(operation_id, FAILED, {"success": False}) is False

    operation = queue.get(operation_id)
    assert operation.status == COMPLETED
    assert operation.result == {"success": True}
    assert operation.completed_at is not None
    with pytest.raises(ValueError):
        queue.finish(operation_id, PENDING, {})


def test_cancel_pending_and_processing(tmp_path: Path) -> None:
    service, _ = build_service(tmp_path, FakeElection(pid=os.getpid()))
    pending_id = service.queue.add("verify", {"path": "/a"})
    processing_id = service.queue.add("remove", {"path": "/b"})
    claimed = service.queue.claim_next(pid=os.getpid())
    assert claimed.id == processing_id

    response = service.cancel_operation(pending_id)
    assert response["status"] == CANCELLED
    assert response["signalled"] is False
    pending = service.queue.get(pending_id)
    assert pending.status == CANCELLED
    assert pending.result == {"success": False, "error": "Operation cancelled by user"}

    # The recorded pid is the leader's own, so nothing may be signalled.
    response = service.cancel_operation(processing_id)
    assert response["signalled"] is False
    assert service.queue.get(processing_id).status == CANCELLED

    with pytest.raises(ValidationError, match="already cancelled"):
        service.cancel_operation(pending_id)


def test_views_and_cleanup(tmp_path: Path) -> None:
    service, _ = build_service(tmp_path)
    queue: OperationQueue = service.queue
    old_id = queue.add("verify", {"path": "/old"})
    recent_id = queue.add("verify", {"path": "/recent"})
    for _ in range(2):
        operation = queue.claim_next(pid=1)
        queue.finish(operation.id, COMPLETED, {"success": True})
    pending_id = queue.add("protect", {"path": "/pending"})
    queue.store.execute(
        "UPDATE operation_queue SET completed_at = '2000-01-01 00:00:00' WHERE id = ?", (old_id,)
    )

    active_ids = [op["id"] for op in service.get_active_operations()]
    assert pending_id in active_ids and recent_id in active_ids
    assert old_id not in active_ids

    assert len(service.get_all_operations(limit=2)) == 2
    assert len(service.get_all_operations(limit=None)) == 3
    assert [op["id"] for op in service.get_all_operations(status=PENDING)] == [pending_id]

    assert service.cleanup_old_operations(days=7) == 1
    assert [op["id"] for op in service.get_all_operations(limit=None)] == [pending_id, recent_id]


def test_stuck_and_abandoned_rows_fail(tmp_path: Path) -> None:
    service, _ = build_service(tmp_path)
    queue = service.queue
    stuck_id = queue.add("verify", {"path": "/a"})
    fresh_id = queue.add("verify", {"path": "/b"})
    queue.claim_next(pid=10)
    queue.claim_next(pid=20)
    queue.store.execute(
        "UPDATE operation_queue SET started_at = '2000-01-01 00:00:00' WHERE id = ?", (stuck_id,)
    )

    assert queue.fail_stuck(3600, "Operation timed out or was interrupted") == 1
    stuck = queue.get(stuck_id)
    assert stuck.status == FAILED
    assert stuck.result["error"] == "Operation timed out or was interrupted"
    assert queue.get(fresh_id).status == PROCESSING

    assert queue.fail_ids([], "unused") == 0
    assert queue.fail_ids([stuck_id, fresh_id], "Operation terminated unexpectedly during processing") == 1
    assert queue.get(fresh_id).status == FAILED
