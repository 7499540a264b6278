"""
Recursive file enumeration shared by protection, metadata, and size accounting.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

ExcludePredicate = Callable[[Path], bool]


def is_parity_dir(path: Path, parity_dir: str = ".parity") -> bool:
    """Return True for the parity storage directory and its per-category variants."""
    name = path.name
    return name == parity_dir or name.startswith(f"{parity_dir}-")


@dataclass
class FileEnumerator:
    """Walk a tree yielding regular files, pruning excluded directories early."""

    exclude: Optional[ExcludePredicate] = None
    extensions: Optional[Iterable[str]] = None
    follow_symlinks: bool = False
    logger: Optional[logging.Logger] = None
    _extensions: Optional[frozenset[str]] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.extensions:
            self._extensions = frozenset(
                ext.strip().lstrip(".").lower() for ext in self.extensions if ext.strip()
            )
        if self.logger is None:
            self.logger = logging.getLogger("par2protect")

    @classmethod
    def excluding_parity(
        cls, parity_dir: str = ".parity", extensions: Optional[Iterable[str]] = None
    ) -> "FileEnumerator":
        return cls(exclude=lambda path: is_parity_dir(path, parity_dir), extensions=extensions)

    def matches(self, path: Path) -> bool:
        if self._extensions is None:
            return True
        return path.suffix.lstrip(".").lower() in self._extensions

    def iter_files(self, root: Path) -> Iterator[Path]:
        """Yield files under root in sorted, deterministic order."""
        if root.is_file():
            if self.matches(root):
                yield root
            return

        def on_error(error: OSError) -> None:
            self.logger.warning("Unable to read %s: %s", error.filename, error)

        for dirpath, dirnames, filenames in os.walk(
            root, topdown=True, onerror=on_error, followlinks=self.follow_symlinks
        ):
            current = Path(dirpath)
            dirnames[:] = sorted(
                name for name in dirnames if not self._excluded(current / name)
            )
            for filename in sorted(filenames):
                file_path = current / filename
                if not self.follow_symlinks and file_path.is_symlink():
                    continue
                if self._excluded(file_path) or not self.matches(file_path):
                    continue
                yield file_path

    def _excluded(self, path: Path) -> bool:
        return self.exclude is not None and self.exclude(path)
