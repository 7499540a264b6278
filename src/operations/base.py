"""
Shared pieces for protect, verify, repair, and remove operations.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from config import AppConfig
from database import DatabaseManager, ProtectedItem
from par2 import CancelToken, CommandBuilder, CommandRunner
from par2.models import PAR2_EXTENSION
from utils.errors import ValidationError
from utils.file_walker import FileEnumerator

VOLUME_FILE_RE = re.compile(r"\.vol\d+\+\d+\.par2$", re.IGNORECASE)
PARTS_SUFFIX = ".parts"

PidCallback = Callable[[int], None]


@dataclass
class OperationResult:
    """What an operation reports back into the queue row."""

    success: bool
    message: str
    status: Optional[str] = None
    details: str = ""
    skipped: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.status:
            result["status"] = self.status
        if self.details:
            result["details"] = self.details
        if self.skipped:
            result["skipped"] = True
        result.update(self.data)
        return result


@dataclass
class RunContext:
    """Per-operation hooks: cancellation and subprocess pid reporting."""

    cancel_token: Optional[CancelToken] = None
    on_start: Optional[PidCallback] = None


def normalize_path(path: Any) -> str:
    return os.path.normpath(os.path.abspath(str(path)))


def main_par2_files(directory: Path) -> list[Path]:
    """Index .par2 files in a directory, excluding recovery volumes."""
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix.lower() == PAR2_EXTENSION and not VOLUME_FILE_RE.search(path.name)
    )


def par2_set_files(par2_file: Path) -> list[Path]:
    """The index file plus its recovery volumes."""
    name = par2_file.name
    stem = name[: -len(PAR2_EXTENSION)] if name.lower().endswith(PAR2_EXTENSION) else name
    directory = par2_file.parent
    if not directory.is_dir():
        return []
    pattern = re.compile(rf"{re.escape(stem)}(\.vol\d+\+\d+)?\.par2")
    return sorted(path for path in directory.iterdir() if path.is_file() and pattern.fullmatch(path.name))


def par2_size(par2_path: Path) -> int:
    """Total bytes of the parity files belonging to an item."""
    if par2_path.is_dir():
        files = [path for path in par2_path.iterdir() if path.is_file() and path.suffix.lower() == PAR2_EXTENSION]
    else:
        files = par2_set_files(par2_path)
    total = 0
    for path in files:
        try:
            total += path.stat().st_size
        except OSError:
            continue
    return total


class OperationBase:
    """Common dependencies and lookups for the operation services."""

    def __init__(
        self,
        config: AppConfig,
        db_manager: DatabaseManager,
        builder: CommandBuilder,
        runner: CommandRunner,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.db_manager = db_manager
        self.builder = builder
        self.runner = runner
        self.logger = logger or logging.getLogger("par2protect")
        self.parity_dir = str(config.get("protection", "parity_dir", default=".parity"))

    def enumerator(self, extensions: Optional[list[str]] = None) -> FileEnumerator:
        return FileEnumerator.excluding_parity(self.parity_dir, extensions)

    def resolve_items(self, parameters: dict, prefer_single: bool = True) -> list[ProtectedItem]:
        """Look up the items named by an ``id`` or ``path`` parameter."""
        if parameters.get("id") not in (None, ""):
            return [self.db_manager.get_item(int(parameters["id"]))]
        path = parameters.get("path")
        if not path:
            raise ValidationError("Either path or id parameter is required")
        path = normalize_path(path)
        file_types = parameters.get("file_types")
        if file_types:
            item = self.db_manager.find_item(path, file_types)
            if item is None:
                raise ValidationError(f"Path is not protected with those file types: {path}")
            return [item]
        items = self.db_manager.get_items_by_path(path)
        if not items:
            raise ValidationError(f"Path is not protected: {path}")
        if prefer_single:
            whole = [item for item in items if not item.mode.is_individual]
            return [whole[0] if whole else items[0]]
        return items

    @staticmethod
    def base_path(item: ProtectedItem) -> Path:
        path = Path(item.path)
        return path if item.mode.uses_directory_base else path.parent
