import json
from pathlib import Path

from config import AppConfig
from orchestrator.main import build_services, main


def build(root: Path):
    config = AppConfig.from_dict(
        {"paths": {"logs": "logs", "data": "data"}, "protection": {"verify_cron": "-1"}},
        root_dir=root,
    )
    launches: list = []
    return build_services(config, launcher=lambda: launches.append(1)), launches


def run_cli(capsys, services, *argv: str):
    code = main(list(argv), services=services)
    return code, json.loads(capsys.readouterr().out)


def test_cli_queue_commands(tmp_path: Path, capsys) -> None:
    services, launches = build(tmp_path)

    code, added = run_cli(
        capsys, services, "add", "protect", "--path", "/data/movies", "--redundancy", "12", "--file-types", "mkv,mp4"
    )
    assert code == 0
    assert added["success"] is True
    assert launches == [1]
    operation_id = added["operation_id"]

    code, status = run_cli(capsys, services, "status", str(operation_id))
    assert status["parameters"] == {"path": "/data/movies", "redundancy": 12, "file_types": ["mkv", "mp4"]}

    code, listing = run_cli(capsys, services, "list", "--status", "pending")
    assert [op["id"] for op in listing] == [operation_id]

    code, active = run_cli(capsys, services, "active")
    assert active[0]["status"] == "pending"

    code, cancelled = run_cli(capsys, services, "cancel", str(operation_id))
    assert cancelled["status"] == "cancelled"

    code, cleanup = run_cli(capsys, services, "cleanup", "--days", "7")
    assert cleanup == {"success": True, "deleted": 0}

    code, error = run_cli(capsys, services, "status", "999")
    assert code == 1
    assert error["success"] is False
    services.close()


def test_cli_items_and_schedule(tmp_path: Path, capsys) -> None:
    services, _ = build(tmp_path)

    code, items = run_cli(capsys, services, "items")
    assert code == 0 and items == []

    code, scheduled = run_cli(capsys, services, "verify-scheduled")
    assert scheduled == {"success": True, "operation_ids": []}

    code, invalid = run_cli(capsys, services, "add", "verify")
    assert code == 1
    assert invalid["error"] == "Either path or id parameter is required"
    services.close()
