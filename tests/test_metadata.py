import os
from pathlib import Path

from database import DatabaseManager, FileMetadataRecord
from metadata import MetadataManager
from metadata.manager import (
    METADATA_ISSUES,
    MISSING_FILES,
    NO_METADATA,
    PARTIAL_RESTORE,
    RESTORED,
    VERIFIED,
)
from par2.models import Mode


def build_manager(root: Path) -> tuple[DatabaseManager, MetadataManager, int]:
    db_manager = DatabaseManager({"main": root / "par2protect.db", "queue": root / "queue.db"})
    db_manager.initialize()
    item_id = db_manager.upsert_item(str(root / "data"), Mode.directory(), 10, str(root / "data" / ".parity"))
    return db_manager, MetadataManager(db_manager), item_id


def _make_files(root: Path) -> list[Path]:
    data = root / "data"
    data.mkdir()
    files = []
    for name, mode in (("a.txt", 0o640), ("b.txt", 0o600)):
        path = data / name
        path.write_text(name, encoding="utf-8")
        os.chmod(path, mode)
        os.utime(path, (1600000000, 1600000000))
        files.append(path)
    return files


def test_capture_and_restore_round_trip(tmp_path: Path) -> None:
    db_manager, metadata, item_id = build_manager(tmp_path)
    files = _make_files(tmp_path)

    assert metadata.capture(item_id, files) == 2
    assert metadata.verify(item_id).status == VERIFIED

    os.chmod(files[0], 0o777)
    os.utime(files[1], (1700000000, 1700000000))
    report = metadata.verify(item_id)
    assert report.status == METADATA_ISSUES
    assert report.verified == 0
    assert report.details.startswith("Metadata verification: 0/2 files verified.")

    restored = metadata.restore(item_id)
    assert restored.status == RESTORED
    assert restored.restored == 2
    assert oct(files[0].stat().st_mode & 0o777) == oct(0o640)
    assert int(files[1].stat().st_mtime) == 1600000000
    assert metadata.verify(item_id).status == VERIFIED
    db_manager.close()


def test_verify_auto_restore(tmp_path: Path) -> None:
    db_manager, metadata, item_id = build_manager(tmp_path)
    files = _make_files(tmp_path)
    metadata.capture(item_id, files)
    os.chmod(files[1], 0o644)

    report = metadata.verify(item_id, auto_restore=True)

    assert report.status == METADATA_ISSUES
    assert report.restored == 1
    assert oct(files[1].stat().st_mode & 0o777) == oct(0o600)
    db_manager.close()


def test_restore_continues_after_chown_failure(tmp_path: Path, monkeypatch) -> None:
    db_manager, metadata, item_id = build_manager(tmp_path)
    path = _make_files(tmp_path)[0]
    foreign_id = str(os.getuid() + 4242)
    db_manager.replace_file_metadata(
        item_id,
        [
            FileMetadataRecord(
                file_path=str(path),
                owner=foreign_id,
                group_name=foreign_id,
                permissions="0604",
                mtime=1500000000,
                extended_attributes=None,
            )
        ],
    )

    def refuse_chown(*args, **kwargs):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(os, "chown", refuse_chown)
    report = metadata.restore(item_id)

    assert report.status == PARTIAL_RESTORE
    assert report.failed == 1
    assert "chown failed" in report.failures[0]
    assert oct(path.stat().st_mode & 0o777) == oct(0o604)
    assert int(path.stat().st_mtime) == 1500000000
    db_manager.close()


def test_unknown_owner_still_restores_group(tmp_path: Path, monkeypatch) -> None:
    db_manager, metadata, item_id = build_manager(tmp_path)
    path = _make_files(tmp_path)[0]
    foreign_gid = os.getgid() + 4242
    db_manager.replace_file_metadata(
        item_id,
        [
            FileMetadataRecord(
                file_path=str(path),
                owner="no_such_user_par2protect",
                group_name=str(foreign_gid),
                permissions="0640",
                mtime=1600000000,
                extended_attributes=None,
            )
        ],
    )
    calls: list = []
    monkeypatch.setattr(os, "chown", lambda target, uid, gid: calls.append((Path(target), uid, gid)))

    report = metadata.restore(item_id)

    assert calls == [(path, -1, foreign_gid)]
    assert report.status == PARTIAL_RESTORE
    assert len(report.failures) == 1
    assert "chown failed" in report.failures[0]
    assert report.error is not None
    assert report.error.failures == report.failures
    db_manager.close()


def test_missing_files_and_no_metadata(tmp_path: Path) -> None:
    db_manager, metadata, item_id = build_manager(tmp_path)
    assert metadata.verify(item_id).status == NO_METADATA
    assert metadata.restore(item_id).status == NO_METADATA

    files = _make_files(tmp_path)
    metadata.capture(item_id, files)
    files[0].unlink()

    report = metadata.verify(item_id)
    assert report.status == MISSING_FILES
    assert report.verified == 1
    assert f"{files[0]}: File does not exist" in report.details

    restored = metadata.restore(item_id)
    assert restored.skipped == 1 and restored.restored == 1
    db_manager.close()
