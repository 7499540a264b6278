"""
Remove protection: delete parity files and the item's database rows.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from database import ProtectedItem
from par2.models import PAR2_EXTENSION

from .base import PARTS_SUFFIX, OperationBase, OperationResult, RunContext, par2_set_files


class RemovalService(OperationBase):
    """Delete parity data for items; never touches files without the .par2 extension."""

    def remove(self, parameters: dict, context: Optional[RunContext] = None) -> OperationResult:
        items = self.resolve_items(parameters, prefer_single=False)
        deleted_files = 0
        for item in items:
            deleted_files += self.delete_parity_files(item)
            self.db_manager.remove_item(item.id)
            self.logger.info("Removed protection for %s (%s)", item.path, item.mode)
        paths = sorted({item.path for item in items})
        return OperationResult(
            success=True,
            message=f"Removed protection for {', '.join(paths)}",
            data={"item_ids": [item.id for item in items], "deleted_files": deleted_files},
        )

    def delete_parity_files(self, item: ProtectedItem) -> int:
        """Delete the item's .par2 files and prune its parity directory when empty."""
        if not item.par2_path:
            return 0
        par2_path = Path(item.par2_path)
        if par2_path.is_dir():
            targets = [
                path for path in par2_path.iterdir() if path.is_file() and path.suffix.lower() == PAR2_EXTENSION
            ]
            owned = [par2_path, par2_path.parent]
        else:
            targets = par2_set_files(par2_path)
            owned = [par2_path.parent]
        deleted = 0
        for path in targets:
            try:
                path.unlink()
                deleted += 1
            except FileNotFoundError:
                continue
        for directory in owned:
            if self._is_parity_dir(directory) and directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
        self.logger.debug("Deleted %s parity files for %s", deleted, item.path)
        return deleted

    def _is_parity_dir(self, directory: Path) -> bool:
        if directory.name.startswith(self.parity_dir):
            return True
        return directory.name.endswith(PARTS_SUFFIX) and directory.parent.name.startswith(self.parity_dir)
