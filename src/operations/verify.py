"""
Verify and repair protected items, folding in metadata checks.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from database import ProtectedItem
from metadata import MetadataManager
from metadata.manager import MISSING_FILES, NO_METADATA
from par2 import Classification, classify, reduce_statuses
from par2.models import (
    METADATA_ISSUES,
    PROTECTED,
    REPAIR,
    REPAIRED,
    UNKNOWN,
    VERIFIED,
    VERIFY,
)
from utils.errors import ClassificationUnknown, ValidationError

from .base import OperationBase, OperationResult, RunContext, main_par2_files

METADATA_VERIFY_HEADER = "\n\n--- Metadata Verification ---\n"
METADATA_RESTORE_HEADER = "\n\n--- Metadata Restoration ---\n"


class VerificationService(OperationBase):
    """Run par2 verify/repair for stored items and persist the outcome."""

    def __init__(self, *args, metadata: Optional[MetadataManager] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.metadata = metadata

    def verify(self, parameters: dict, context: Optional[RunContext] = None) -> OperationResult:
        context = context or RunContext()
        item = self.resolve_items(parameters)[0]
        self._check_paths(item)
        outcome = self._run(item, VERIFY, context)
        status = VERIFIED if outcome.status == PROTECTED else outcome.status
        details = outcome.details

        if _flag(parameters.get("verify_metadata"), default=True) and self.metadata is not None:
            auto_restore = _flag(parameters.get("auto_restore_metadata"), default=False)
            report = self.metadata.verify(item.id, auto_restore=auto_restore)
            if report.status != NO_METADATA:
                details += METADATA_VERIFY_HEADER + report.details
                if status == VERIFIED and report.status in (METADATA_ISSUES, MISSING_FILES):
                    status = METADATA_ISSUES

        self.db_manager.update_status(item.id, status, details)
        self.logger.info("Verified %s: %s", item.path, status)
        if outcome.status == UNKNOWN:
            raise ClassificationUnknown(f"Unrecognized par2 verify output for {item.path}", details)
        return OperationResult(
            success=True,
            message=f"Verification of {item.path}: {status}",
            status=status,
            details=details,
            data={"item_id": item.id, "targets": list(outcome.targets)},
        )

    def repair(self, parameters: dict, context: Optional[RunContext] = None) -> OperationResult:
        context = context or RunContext()
        item = self.resolve_items(parameters)[0]
        self._check_paths(item)
        outcome = self._run(item, REPAIR, context)
        status = outcome.status
        details = outcome.details

        if (
            status == REPAIRED
            and self.metadata is not None
            and _flag(parameters.get("restore_metadata"), default=True)
        ):
            report = self.metadata.restore(item.id)
            if report.status != NO_METADATA:
                details += METADATA_RESTORE_HEADER + report.details
            if report.error is not None:
                self.logger.warning("Metadata restored partially for %s: %s", item.path, report.error)

        self.db_manager.update_status(item.id, status, details)
        self.logger.info("Repair of %s: %s", item.path, status)
        if status == UNKNOWN:
            raise ClassificationUnknown(f"Unrecognized par2 repair output for {item.path}", details)
        return OperationResult(
            success=status == REPAIRED,
            message=f"Repair of {item.path}: {status}",
            status=status,
            details=details,
            data={"item_id": item.id, "targets": list(outcome.targets)},
        )

    def _check_paths(self, item: ProtectedItem) -> None:
        if not Path(item.path).exists():
            raise ValidationError(f"Protected path does not exist: {item.path}")
        if not item.par2_path or not Path(item.par2_path).exists():
            raise ValidationError(f"par2 file not found: {item.par2_path or item.path}")

    def _run(self, item: ProtectedItem, kind: str, context: RunContext) -> Classification:
        par2_path = Path(item.par2_path)
        base_path = self.base_path(item)
        if par2_path.is_dir():
            per_file: dict[str, str] = {}
            for par2_file in main_par2_files(par2_path):
                outcome = self._run_one(par2_file, base_path, kind, context)
                per_file[par2_file.name[: -len(".par2")]] = outcome.status
            if not per_file:
                raise ValidationError(f"No par2 files found in {par2_path}")
            return reduce_statuses(kind, per_file)
        return self._run_one(par2_path, base_path, kind, context)

    def _run_one(self, par2_file: Path, base_path: Path, kind: str, context: RunContext) -> Classification:
        if kind == VERIFY:
            argv = self.builder.verify(par2_file, base_path)
        else:
            argv = self.builder.repair(par2_file, base_path)
        result = self.runner.run(argv, context.cancel_token, context.on_start)
        outcome = classify(result.output, kind, result.exit_status)
        if outcome.status == UNKNOWN:
            self.logger.warning(
                "Unrecognized par2 %s output for %s (exit %s):\n%s",
                kind,
                par2_file,
                result.exit_status,
                result.output,
            )
        return outcome


def _flag(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
