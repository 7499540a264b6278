"""
Create par2 recovery data for files, directories, and per-file categories.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from metadata import MetadataManager
from par2 import CreateOptions, batch_files, classify
from par2.commands import DEFAULT_MAX_ARGUMENTS
from par2.models import (
    ERROR,
    PROTECT,
    PROTECTED,
    SKIPPED,
    Mode,
    category_name,
    normalize_file_types,
    parity_dir_name,
)
from utils.errors import Par2FilesExist, ToolExecutionError, ValidationError

from .base import PARTS_SUFFIX, OperationBase, OperationResult, RunContext, normalize_path, par2_size


@dataclass
class ProtectionPlan:
    """Everything needed to run par2 create for one request."""

    path: Path
    mode: Mode
    redundancy: int
    parity_dir: Path
    par2_path: Path
    base_path: Path
    files: list[Path]
    file_types: Optional[list[str]] = None
    batches: list[tuple[Path, list[Path]]] = field(default_factory=list)


class ProtectionService(OperationBase):
    """Protect paths with par2 and record them as protected items."""

    def __init__(self, *args, metadata: Optional[MetadataManager] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.metadata = metadata
        self.default_redundancy = self.config.get_int("protection", "default_redundancy", default=10)
        self.max_arguments = self.config.get_int("par2", "max_arguments", default=DEFAULT_MAX_ARGUMENTS)

    def protect(self, parameters: dict, context: Optional[RunContext] = None) -> OperationResult:
        context = context or RunContext()
        plan = self.plan(parameters)
        if not plan.files:
            return OperationResult(
                success=True,
                skipped=True,
                message=f"No files to protect in {plan.path}",
                status=SKIPPED,
            )
        options = CreateOptions.from_parameters(plan.redundancy, parameters.get("advanced_settings"))
        plan.parity_dir.mkdir(parents=True, exist_ok=True)
        if plan.mode.is_individual:
            return self._protect_individual(plan, options, context)

        self.logger.info(
            "Protecting %s (%s, %s%% redundancy, %s files)", plan.path, plan.mode, plan.redundancy, len(plan.files)
        )
        created, skipped, errors = self._create_sets(plan.batches, plan.base_path, options, context)
        if errors:
            raise ToolExecutionError(
                f"Failed to create {len(errors)} of {len(plan.batches)} parity sets for {plan.path}: "
                + "; ".join(errors.values())
            )
        if not created:
            raise Par2FilesExist(f"par2 files already exist for {plan.path}")
        item_id = self._record(plan, [str(path) for path in plan.files], parent_dir=None)
        return OperationResult(
            success=True,
            message=f"Protected {plan.path}",
            status=PROTECTED,
            data={"item_id": item_id, "files": len(plan.files), "parity_sets": created + skipped},
        )

    def plan(self, parameters: dict) -> ProtectionPlan:
        """Validate the request and work out mode, parity location, and file list."""
        file_types = normalize_file_types(parameters.get("file_types"))
        redundancy = parameters.get("redundancy")
        raw_path = parameters.get("path")
        if not raw_path and parameters.get("id") not in (None, ""):
            item = self.db_manager.get_item(int(parameters["id"]))
            raw_path = item.path
            file_types = file_types or item.file_types
            redundancy = redundancy or item.redundancy
        if not raw_path:
            raise ValidationError("Either path or id parameter is required")
        path = Path(normalize_path(raw_path))
        if not path.exists():
            raise ValidationError(f"Path does not exist: {path}")
        redundancy = int(redundancy or self.default_redundancy)
        if not 1 <= redundancy <= 100:
            raise ValidationError(f"Redundancy must be between 1 and 100, got {redundancy}")

        if path.is_file():
            parity_dir = path.parent / self.parity_dir
            par2_file = parity_dir / f"{path.name}.par2"
            return ProtectionPlan(
                path=path,
                mode=Mode.file(),
                redundancy=redundancy,
                parity_dir=parity_dir,
                par2_path=par2_file,
                base_path=path.parent,
                files=[path],
                batches=[(par2_file, [path])],
            )

        if file_types:
            category = category_name(file_types)
            parity_dir = path / parity_dir_name(self.parity_dir, category)
            files = list(self.enumerator(file_types).iter_files(path))
            return ProtectionPlan(
                path=path,
                mode=Mode.individual(category),
                redundancy=redundancy,
                parity_dir=parity_dir,
                par2_path=parity_dir,
                base_path=path,
                files=files,
                file_types=file_types,
            )

        parity_dir = path / self.parity_dir
        files = list(self.enumerator().iter_files(path))
        groups = batch_files(files, self.max_arguments) if files else []
        if len(groups) > 1:
            parity_dir = parity_dir / f"{path.name}{PARTS_SUFFIX}"
            batches = [
                (parity_dir / f"{path.name}.part{index:03d}.par2", group)
                for index, group in enumerate(groups, start=1)
            ]
            par2_path = parity_dir
        else:
            par2_path = parity_dir / f"{path.name}.par2"
            batches = [(par2_path, files)]
        return ProtectionPlan(
            path=path,
            mode=Mode.directory(),
            redundancy=redundancy,
            parity_dir=parity_dir,
            par2_path=par2_path,
            base_path=path,
            files=files,
            batches=batches,
        )

    def _create_sets(
        self,
        batches: list[tuple[Path, list[Path]]],
        base_path: Path,
        options: CreateOptions,
        context: RunContext,
    ) -> tuple[int, int, dict[str, str]]:
        created = 0
        skipped = 0
        errors: dict[str, str] = {}
        for par2_file, files in batches:
            if context.cancel_token is not None and context.cancel_token.cancelled:
                raise ToolExecutionError("Operation cancelled")
            argv = self.builder.create(par2_file, files, base_path, options)
            result = self.runner.run(argv, context.cancel_token, context.on_start)
            outcome = classify(result.output, PROTECT, result.exit_status)
            if outcome.status == PROTECTED:
                created += 1
            elif outcome.status == SKIPPED:
                self.logger.info("par2 files already exist: %s", par2_file)
                skipped += 1
            else:
                errors[par2_file.name] = _failure_text(result.exit_status, result.output)
                self.logger.error("par2 create failed for %s: %s", par2_file, errors[par2_file.name])
        return created, skipped, errors

    def _protect_individual(
        self, plan: ProtectionPlan, options: CreateOptions, context: RunContext
    ) -> OperationResult:
        self.logger.info(
            "Protecting %s files individually under %s (%s)", len(plan.files), plan.path, plan.mode
        )
        batches = [
            (plan.parity_dir / f"{_flat_name(path, plan.path)}.par2", [path]) for path in plan.files
        ]
        protected: list[str] = []
        errors: dict[str, str] = {}
        created = 0
        for par2_file, files in batches:
            set_created, set_skipped, set_errors = self._create_sets(
                [(par2_file, files)], plan.base_path, options, context
            )
            if set_errors:
                errors[str(files[0])] = next(iter(set_errors.values()))
                continue
            created += set_created
            protected.append(str(files[0]))
        if not protected:
            raise ToolExecutionError(
                f"Failed to protect any of {len(plan.files)} files in {plan.path}: "
                + "; ".join(f"{name}: {text}" for name, text in errors.items())
            )
        if not created:
            raise Par2FilesExist(f"par2 files already exist for every file in {plan.path}")
        item_id = self._record(plan, protected, parent_dir=str(plan.path))
        details = "\n".join(f"{name}: {ERROR} {text}" for name, text in errors.items())
        return OperationResult(
            success=True,
            message=f"Protected {len(protected)} of {len(plan.files)} files in {plan.path}",
            status=PROTECTED,
            details=details,
            data={"item_id": item_id, "files": len(protected), "errors": len(errors)},
        )

    def _record(self, plan: ProtectionPlan, files: list[str], parent_dir: Optional[str]) -> int:
        item_id = self.db_manager.upsert_item(
            path=str(plan.path),
            mode=plan.mode,
            redundancy=plan.redundancy,
            par2_path=str(plan.par2_path),
            file_types=plan.file_types,
            parent_dir=parent_dir,
            protected_files=files if plan.mode.is_individual else None,
        )
        if self.metadata is not None:
            self.metadata.capture(item_id, [Path(name) for name in files])
        data_size = 0
        for name in files:
            try:
                data_size += os.path.getsize(name)
            except OSError:
                continue
        self.db_manager.update_sizes(item_id, data_size, par2_size(plan.par2_path))
        return item_id


def _flat_name(path: Path, root: Path) -> str:
    """Parity base name for one file, unique within the category directory."""
    return "__".join(path.relative_to(root).parts)


def _failure_text(exit_status: Optional[int], output: str) -> str:
    tail = output.strip().splitlines()[-3:]
    return f"exit {exit_status}: " + " | ".join(tail) if tail else f"exit {exit_status}"
