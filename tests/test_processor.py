import os
import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from config import AppConfig
from database import DatabaseManager, OperationQueue
from database.queue import CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING, SKIPPED
from operations import OperationResult
from orchestrator.main import build_services
from orchestrator.processor import QueueProcessor
from orchestrator.queue import QueueService
from par2.models import DAMAGED, PROTECTED, REPAIRED, VERIFIED
from utils.errors import ResourceUnavailable
from utils.instance_guard import PidFileElection
from utils.resource_monitor import Availability

FAKE_PAR2 = """#!/bin/sh
mode="$1"
shift
parfile=""
for arg in "$@"; do
    case "$arg" in
        --) break ;;
        -*) ;;
        *) parfile="$arg"; break ;;
    esac
done
case "$mode" in
    c)
        if [ -e "$parfile" ]; then
            echo "Could not create file: File already exists"
            exit 1
        fi
        echo "parity for $*" > "$parfile"
        echo "Done"
        ;;
    v)
        if [ -e "STATE/slow" ]; then
            exec sleep 30
        fi
        if [ -e "STATE/damaged" ]; then
            echo 'Target: "a.txt" - damaged. Found 1 of 2 data blocks.'
            echo "Repair is required."
            exit 1
        fi
        echo "All files are correct, repair is not required."
        ;;
    r)
        rm -f "STATE/damaged"
        echo "Repair complete."
        ;;
    *)
        exit 2
        ;;
esac
"""


class AlwaysAvailable:
    def check_availability(self) -> Availability:
        return Availability(available=True, reasons=[], metrics={})


def build_environment(root: Path, par2: Optional[dict] = None):
    state = root / "state"
    state.mkdir()
    script = root / "fake-par2"
    script.write_text(FAKE_PAR2.replace("STATE", str(state)), encoding="utf-8")
    script.chmod(0o755)
    photos = root / "photos"
    photos.mkdir()
    (photos / "a.txt").write_text("a-data", encoding="utf-8")
    (photos / "b.txt").write_text("b-data", encoding="utf-8")

    config = AppConfig.from_dict(
        {
            "paths": {"logs": "logs", "data": "data"},
            "par2": {"binary": str(script), **(par2 or {})},
            "queue": {"poll_interval_seconds": 0.05, "max_execution_time": 60},
        },
        root_dir=root,
    )
    launches: list = []
    services = build_services(config, launcher=lambda: launches.append(1))
    services.resource_monitor = AlwaysAvailable()
    return services, photos, state


def run_one(services, operation_type: str, parameters: dict):
    operation_id = services.queue.add_operation(operation_type, parameters)["operation_id"]
    services.processor().run()
    return services.queue.queue.get(operation_id)


def test_full_lifecycle_with_fake_par2(tmp_path: Path) -> None:
    services, photos, state = build_environment(tmp_path)
    db_manager = services.db_manager

    protect = run_one(services, "protect", {"path": str(photos), "redundancy": 5})
    assert protect.status == COMPLETED
    item = db_manager.list_items()[0]
    assert item.path == str(photos)
    assert item.redundancy == 5
    assert item.last_status == PROTECTED
    assert Path(item.par2_path) == photos / ".parity" / "photos.par2"
    assert Path(item.par2_path).exists()
    assert item.data_size == 12
    assert item.size == item.data_size + item.par2_size
    assert db_manager.count_rows("file_metadata", item.id) == 2
    assert not services.election.is_leader_alive()

    verify = run_one(services, "verify", {"path": str(photos)})
    assert verify.status == COMPLETED
    assert verify.result["status"] == VERIFIED
    assert db_manager.get_item(item.id).last_status == VERIFIED

    (state / "damaged").write_text("", encoding="utf-8")
    damaged = run_one(services, "verify", {"id": item.id})
    assert damaged.status == COMPLETED
    assert db_manager.get_item(item.id).last_status == DAMAGED
    assert "a.txt" in db_manager.get_item(item.id).last_details

    repair = run_one(services, "repair", {"id": item.id})
    assert repair.status == COMPLETED
    assert not (state / "damaged").exists()
    assert db_manager.get_item(item.id).last_status == REPAIRED
    assert [entry["status"] for entry in db_manager.get_history(item.id)] == [REPAIRED, DAMAGED, VERIFIED]

    again = run_one(services, "protect", {"path": str(photos)})
    assert again.status == SKIPPED
    assert again.result["skipped"] is True

    removed = run_one(services, "remove", {"path": str(photos)})
    assert removed.status == COMPLETED
    assert db_manager.list_items() == []
    assert not (photos / ".parity").exists()
    assert (photos / "a.txt").read_text(encoding="utf-8") == "a-data"
    services.close()


def test_individual_mode_protects_each_matching_file(tmp_path: Path) -> None:
    services, photos, _ = build_environment(tmp_path)
    (photos / "sub").mkdir()
    (photos / "sub" / "c.jpg").write_text("jpg", encoding="utf-8")
    (photos / "d.JPG").write_text("jpg2", encoding="utf-8")

    operation = run_one(services, "protect", {"path": str(photos), "file_types": ["jpg"]})

    assert operation.status == COMPLETED
    item = services.db_manager.find_item(str(photos), ["jpg"])
    assert str(item.mode) == "individual:jpg"
    assert sorted(Path(name).name for name in item.protected_files) == ["c.jpg", "d.JPG"]
    parity = photos / ".parity-jpg"
    assert sorted(path.name for path in parity.iterdir()) == ["d.JPG.par2", "sub__c.jpg.par2"]

    verify = run_one(services, "verify", {"path": str(photos), "file_types": ["jpg"]})
    assert verify.status == COMPLETED
    assert verify.result["status"] == VERIFIED
    assert verify.result["details"].startswith("Verified: 2, Damaged: 0, Missing: 0, Error: 0")
    services.close()


def test_same_stem_files_get_separate_parity_sets(tmp_path: Path) -> None:
    services, photos, _ = build_environment(tmp_path)
    (photos / "a.jpg").write_text("jpg-data", encoding="utf-8")
    db_manager = services.db_manager

    text = run_one(services, "protect", {"path": str(photos / "a.txt")})
    image = run_one(services, "protect", {"path": str(photos / "a.jpg")})

    assert text.status == COMPLETED
    assert image.status == COMPLETED
    parity = photos / ".parity"
    assert sorted(path.name for path in parity.iterdir()) == ["a.jpg.par2", "a.txt.par2"]
    assert Path(db_manager.get_item(text.result["item_id"]).par2_path) == parity / "a.txt.par2"

    removed = run_one(services, "remove", {"path": str(photos / "a.txt")})
    assert removed.status == COMPLETED
    assert sorted(path.name for path in parity.iterdir()) == ["a.jpg.par2"]
    assert [item.path for item in db_manager.list_items()] == [str(photos / "a.jpg")]
    services.close()


def test_batched_directory_keeps_its_parity_sets_apart(tmp_path: Path) -> None:
    services, photos, state = build_environment(tmp_path, par2={"max_arguments": 1})
    db_manager = services.db_manager
    single = run_one(services, "protect", {"path": str(photos / "a.txt")})
    assert single.status == COMPLETED

    batched = run_one(services, "protect", {"path": str(photos)})
    assert batched.status == COMPLETED
    item = db_manager.get_item(batched.result["item_id"])
    parts = photos / ".parity" / "photos.parts"
    assert Path(item.par2_path) == parts
    assert sorted(path.name for path in parts.iterdir()) == ["photos.part001.par2", "photos.part002.par2"]

    verify = run_one(services, "verify", {"id": item.id})
    assert verify.status == COMPLETED
    assert verify.result["status"] == VERIFIED
    assert verify.result["details"].startswith("Verified: 2, Damaged: 0, Missing: 0, Error: 0")

    (state / "damaged").write_text("", encoding="utf-8")
    damaged = run_one(services, "verify", {"id": item.id})
    assert damaged.result["status"] == DAMAGED
    (state / "damaged").unlink()

    removed = run_one(services, "remove", {"id": item.id})
    assert removed.status == COMPLETED
    assert removed.result["deleted_files"] == 2
    assert not parts.exists()
    assert (photos / ".parity" / "a.txt.par2").exists()
    assert [entry.path for entry in db_manager.list_items()] == [str(photos / "a.txt")]
    services.close()


def test_failures_are_recorded_on_the_operation(tmp_path: Path) -> None:
    services, photos, _ = build_environment(tmp_path)

    missing = run_one(services, "protect", {"path": str(tmp_path / "nowhere")})
    assert missing.status == FAILED
    assert missing.result["success"] is False
    assert "Path does not exist" in missing.result["error"]

    bad_id = services.queue.queue.add("verify", {"redundancy": 3})
    services.processor().run()
    bad = services.queue.queue.get(bad_id)
    assert bad.status == FAILED
    assert bad.result["error"] == "Invalid parameters: Either path or id parameter is required"

    unprotected = run_one(services, "verify", {"path": str(photos)})
    assert unprotected.status == FAILED
    assert "not protected" in unprotected.result["error"]
    services.close()


def test_concurrency_limit_keeps_operations_pending(tmp_path: Path) -> None:
    services, photos, _ = build_environment(tmp_path)
    queue: OperationQueue = services.queue.queue
    busy_id = queue.add("verify", {"path": "/elsewhere"})
    queue.claim_next(pid=999999)
    waiting_id = queue.add("protect", {"path": str(photos)})

    processor = QueueProcessor(
        services.db_manager,
        services.election,
        handlers={},
        resource_monitor=AlwaysAvailable(),
        max_concurrent=1,
        max_execution_time=0.3,
        poll_interval_seconds=0.05,
    )
    with pytest.raises(ResourceUnavailable):
        processor.run_once()
    assert processor.run() == 0

    assert queue.get(waiting_id).status == PENDING
    assert queue.get(busy_id).status == PROCESSING
    services.close()


def test_busy_resources_defer_claims(tmp_path: Path) -> None:
    services, photos, _ = build_environment(tmp_path)

    class Exhausted:
        def check_availability(self) -> Availability:
            return Availability(available=False, reasons=["CPU usage 99.0% exceeds limit 80.0%"], metrics={})

    waiting_id = services.queue.queue.add("protect", {"path": str(photos)})
    processor = QueueProcessor(
        services.db_manager,
        services.election,
        handlers={"protect": services.protection.protect},
        resource_monitor=Exhausted(),
        max_execution_time=0.2,
        poll_interval_seconds=0.05,
    )
    processor.run()
    assert services.queue.queue.get(waiting_id).status == PENDING
    services.close()


class EnqueueWhileReleasing:
    """Adds one row after the drain loop ends but before the lock is given up."""

    def __init__(self, election: PidFileElection, queue: OperationQueue) -> None:
        self.election = election
        self.queue = queue
        self.added: list[int] = []

    def acquire(self):
        return self.election.acquire()

    def release(self) -> None:
        if not self.added:
            self.added.append(self.queue.add("verify", {"path": "/late"}))
        self.election.release()

    def leader_pid(self):
        return self.election.leader_pid()

    def is_leader_alive(self) -> bool:
        return self.election.is_leader_alive()


def test_rows_added_during_shutdown_are_processed(tmp_path: Path) -> None:
    services, _, _ = build_environment(tmp_path)
    queue: OperationQueue = services.queue.queue
    election = EnqueueWhileReleasing(services.election, queue)
    seen: list[dict] = []

    def verify(parameters: dict, context) -> OperationResult:
        seen.append(parameters)
        return OperationResult(success=True, message="ok")

    processor = QueueProcessor(
        services.db_manager,
        election,
        handlers={"verify": verify},
        resource_monitor=AlwaysAvailable(),
        max_execution_time=10,
        poll_interval_seconds=0.05,
    )

    assert processor.run() == 1
    assert seen == [{"path": "/late"}]
    assert queue.get(election.added[0]).status == COMPLETED
    assert not services.election.is_leader_alive()
    services.close()


def test_cancel_stops_running_par2(tmp_path: Path) -> None:
    services, photos, state = build_environment(tmp_path)
    assert run_one(services, "protect", {"path": str(photos)}).status == COMPLETED
    item_id = services.db_manager.list_items()[0].id
    (state / "slow").write_text("", encoding="utf-8")
    operation_id = services.queue.queue.add("verify", {"id": item_id})

    worker = threading.Thread(target=services.processor().run)
    worker.start()

    observer = DatabaseManager(services.config.db_paths())
    lock_path = tmp_path / "data" / "queue_processor.lock"
    canceller = QueueService(observer, PidFileElection(lock_path), launcher=lambda: None, grace_seconds=0.5)
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        operation = canceller.queue.get(operation_id)
        if operation.status == PROCESSING and operation.pid not in (None, os.getpid()):
            break
        time.sleep(0.05)
    else:
        pytest.fail("verify never started")

    response = canceller.cancel_operation(operation_id)
    worker.join(timeout=15)

    assert not worker.is_alive()
    assert response["signalled"] is True
    cancelled = canceller.queue.get(operation_id)
    assert cancelled.status == CANCELLED
    assert cancelled.result == {"success": False, "error": "Operation cancelled by user"}
    assert services.db_manager.get_item(item_id).last_status == PROTECTED
    observer.close()
    services.close()
