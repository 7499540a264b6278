"""
Capture, verification, and restoration of file ownership and permissions.
"""

from __future__ import annotations

import grp
import logging
import os
import pwd
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional

from database import DatabaseManager, FileMetadataRecord
from utils.errors import MetadataPartialFailure

VERIFIED = "VERIFIED"
METADATA_ISSUES = "METADATA_ISSUES"
MISSING_FILES = "MISSING_FILES"
NO_METADATA = "NO_METADATA"
RESTORED = "RESTORED"
PARTIAL_RESTORE = "PARTIAL_RESTORE"


@dataclass
class MetadataReport:
    """Outcome of comparing stored metadata to the filesystem."""

    status: str
    total: int = 0
    verified: int = 0
    missing: list[str] = field(default_factory=list)
    issues: Dict[str, list[str]] = field(default_factory=dict)
    restored: int = 0
    restore_failed: int = 0

    @property
    def details(self) -> str:
        lines = [f"Metadata verification: {self.verified}/{self.total} files verified."]
        for path in self.missing:
            lines.append(f"{path}: File does not exist")
        for path, problems in self.issues.items():
            lines.append(f"{path}: " + "; ".join(problems))
        if self.restored or self.restore_failed:
            lines.append(f"Auto-restore: {self.restored} restored, {self.restore_failed} failed")
        return "\n".join(lines)


@dataclass
class RestoreReport:
    """Counts from reapplying stored metadata."""

    status: str
    restored: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[str] = field(default_factory=list)
    error: Optional[MetadataPartialFailure] = None

    @property
    def details(self) -> str:
        lines = [
            f"Metadata restoration: {self.restored} restored, {self.failed} failed, {self.skipped} skipped."
        ]
        lines.extend(self.failures)
        return "\n".join(lines)


def _owner_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _resolve_uid(owner: str) -> int:
    if owner.isdigit():
        return int(owner)
    return pwd.getpwnam(owner).pw_uid


def _resolve_gid(group: str) -> int:
    if group.isdigit():
        return int(group)
    return grp.getgrnam(group).gr_gid


def read_xattrs(path: Path) -> Optional[Dict[str, str]]:
    """Return extended attributes as hex strings; None where unsupported."""
    listxattr = getattr(os, "listxattr", None)
    if listxattr is None:
        return None
    try:
        names = listxattr(str(path), follow_symlinks=False)
    except OSError:
        return None
    values: Dict[str, str] = {}
    for name in names:
        try:
            values[name] = os.getxattr(str(path), name, follow_symlinks=False).hex()
        except OSError:
            continue
    return values or None


def read_file_metadata(path: Path) -> FileMetadataRecord:
    info = path.stat()
    return FileMetadataRecord(
        file_path=str(path),
        owner=_owner_name(info.st_uid),
        group_name=_group_name(info.st_gid),
        permissions=f"{stat.S_IMODE(info.st_mode):04o}",
        mtime=int(info.st_mtime),
        extended_attributes=read_xattrs(path),
    )


class MetadataManager:
    """Store and check ownership, permissions, mtime, and xattrs apart from parity data."""

    def __init__(self, db_manager: DatabaseManager, logger: Optional[logging.Logger] = None) -> None:
        self.db_manager = db_manager
        self.logger = logger or logging.getLogger("par2protect")

    def capture(self, item_id: int, files: Iterable[Path]) -> int:
        """Replace the item's stored metadata with the current state of files."""
        records = []
        for path in files:
            try:
                records.append(read_file_metadata(path))
            except OSError as exc:
                self.logger.warning("Unable to read metadata for %s: %s", path, exc)
        count = self.db_manager.replace_file_metadata(item_id, records)
        self.logger.debug("Captured metadata for %s files of item %s", count, item_id)
        return count

    def verify(self, item_id: int, auto_restore: bool = False) -> MetadataReport:
        stored = self.db_manager.get_file_metadata(item_id)
        if not stored:
            return MetadataReport(status=NO_METADATA)
        report = MetadataReport(status=VERIFIED, total=len(stored))
        for record in stored:
            path = Path(record.file_path)
            if not path.exists():
                report.missing.append(record.file_path)
                continue
            try:
                current = read_file_metadata(path)
            except OSError as exc:
                report.issues[record.file_path] = [f"Unable to read metadata: {exc}"]
                continue
            differences = compare_metadata(record, current)
            if not differences:
                report.verified += 1
                continue
            report.issues[record.file_path] = differences
            if auto_restore:
                failures = self._apply(path, record)
                if failures:
                    report.restore_failed += 1
                else:
                    report.restored += 1
        if report.missing:
            report.status = MISSING_FILES
        elif report.issues:
            report.status = METADATA_ISSUES
        if report.status != VERIFIED:
            self.logger.warning("Metadata check for item %s: %s", item_id, report.status)
        return report

    def restore(self, item_id: int) -> RestoreReport:
        """Reapply every stored field, continuing past individual failures."""
        stored = self.db_manager.get_file_metadata(item_id)
        if not stored:
            return RestoreReport(status=NO_METADATA)
        report = RestoreReport(status=RESTORED)
        for record in stored:
            path = Path(record.file_path)
            if not path.exists():
                report.skipped += 1
                continue
            failures = self._apply(path, record)
            if failures:
                report.failed += 1
                report.failures.extend(f"{record.file_path}: {failure}" for failure in failures)
            else:
                report.restored += 1
        if report.failed:
            report.status = PARTIAL_RESTORE
            report.error = MetadataPartialFailure(
                f"{report.failed} file(s) could not be fully restored", report.failures
            )
            self.logger.warning(
                "Metadata restore for item %s: %s restored, %s failed, %s skipped",
                item_id,
                report.restored,
                report.failed,
                report.skipped,
            )
        return report

    def _apply(self, path: Path, record: FileMetadataRecord) -> list[str]:
        """Apply ownership, mode, xattrs, and mtime where they differ; return the failures."""
        failures = _apply_ownership(path, record)
        if record.permissions:
            try:
                os.chmod(path, int(record.permissions, 8))
            except (OSError, ValueError) as exc:
                failures.append(f"chmod failed: {exc}")
        if record.extended_attributes and hasattr(os, "setxattr"):
            current = read_xattrs(path) or {}
            for name, value in record.extended_attributes.items():
                if current.get(name) == value:
                    continue
                try:
                    os.setxattr(str(path), name, bytes.fromhex(value), follow_symlinks=False)
                except (OSError, ValueError) as exc:
                    failures.append(f"xattr {name} failed: {exc}")
        # mtime last; the other calls may touch ctime but never mtime.
        try:
            info = path.stat()
            os.utime(path, (info.st_atime, record.mtime))
        except OSError as exc:
            failures.append(f"mtime failed: {exc}")
        return failures


def _apply_ownership(path: Path, record: FileMetadataRecord) -> list[str]:
    """Set owner and group in separate calls, reporting each failure on its own."""
    try:
        info = path.stat()
    except OSError as exc:
        return [f"stat failed: {exc}"]
    failures: list[str] = []
    try:
        uid = _resolve_uid(record.owner)
        if info.st_uid != uid:
            os.chown(path, uid, -1)
    except (OSError, KeyError) as exc:
        failures.append(f"chown failed: {exc}")
    try:
        gid = _resolve_gid(record.group_name)
        if info.st_gid != gid:
            os.chown(path, -1, gid)
    except (OSError, KeyError) as exc:
        failures.append(f"chgrp failed: {exc}")
    return failures


def compare_metadata(stored: FileMetadataRecord, current: FileMetadataRecord) -> list[str]:
    differences = []
    if stored.owner != current.owner:
        differences.append(f"owner {stored.owner} -> {current.owner}")
    if stored.group_name != current.group_name:
        differences.append(f"group {stored.group_name} -> {current.group_name}")
    if stored.permissions != current.permissions:
        differences.append(f"permissions {stored.permissions} -> {current.permissions}")
    if stored.mtime != current.mtime:
        differences.append(f"mtime {stored.mtime} -> {current.mtime}")
    if (stored.extended_attributes or {}) != (current.extended_attributes or {}):
        differences.append("extended attributes changed")
    return differences
