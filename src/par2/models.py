"""
Protection modes, status names, and parity naming rules.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterable, Optional

PAR2_EXTENSION = ".par2"

# Operation kinds accepted by the queue.
PROTECT = "protect"
VERIFY = "verify"
REPAIR = "repair"
REMOVE = "remove"
OPERATION_TYPES = (PROTECT, VERIFY, REPAIR, REMOVE)

# Item and classification statuses.
PROTECTED = "PROTECTED"
VERIFIED = "VERIFIED"
DAMAGED = "DAMAGED"
MISSING = "MISSING"
REPAIRED = "REPAIRED"
REPAIR_FAILED = "REPAIR_FAILED"
ERROR = "ERROR"
UNKNOWN = "UNKNOWN"
SKIPPED = "SKIPPED"
METADATA_ISSUES = "METADATA_ISSUES"

MAX_CATEGORY_TYPES = 5


@dataclass(frozen=True)
class Mode:
    """Protection mode: a single file, a whole directory, or per-file parity for a category."""

    kind: str
    category: Optional[str] = None

    FILE = "file"
    DIRECTORY = "directory"
    INDIVIDUAL = "individual"

    @classmethod
    def file(cls) -> "Mode":
        return cls(cls.FILE)

    @classmethod
    def directory(cls) -> "Mode":
        return cls(cls.DIRECTORY)

    @classmethod
    def individual(cls, category: str) -> "Mode":
        if not category:
            raise ValueError("Individual mode requires a category")
        return cls(cls.INDIVIDUAL, category)

    @classmethod
    def parse(cls, value: str) -> "Mode":
        """Parse the persisted form written by ``str(mode)``."""
        if value == cls.FILE:
            return cls.file()
        if value == cls.DIRECTORY:
            return cls.directory()
        prefix = f"{cls.INDIVIDUAL}:"
        if value.startswith(prefix):
            return cls.individual(value[len(prefix):])
        raise ValueError(f"Unknown protection mode: {value!r}")

    @property
    def is_file(self) -> bool:
        return self.kind == self.FILE

    @property
    def is_individual(self) -> bool:
        return self.kind == self.INDIVIDUAL

    @property
    def uses_directory_base(self) -> bool:
        return self.kind in (self.DIRECTORY, self.INDIVIDUAL)

    def __str__(self) -> str:
        if self.kind == self.INDIVIDUAL:
            return f"{self.INDIVIDUAL}:{self.category}"
        return self.kind


def normalize_file_types(file_types: Optional[Iterable[str]]) -> Optional[list[str]]:
    """Lowercase, strip leading dots, dedupe, and sort extension lists."""
    if not file_types:
        return None
    cleaned = sorted({str(ext).strip().lstrip(".").lower() for ext in file_types if str(ext).strip()})
    return cleaned or None


def category_name(file_types: Optional[Iterable[str]]) -> str:
    """Return the parity category for a set of extensions."""
    types = normalize_file_types(file_types)
    if not types:
        return "all"
    if len(types) > MAX_CATEGORY_TYPES:
        digest = hashlib.md5(",".join(types).encode("utf-8")).hexdigest()
        return f"types-{digest[:8]}"
    return "-".join(types)


def parity_dir_name(base_name: str, category: Optional[str] = None) -> str:
    if category:
        return f"{base_name}-{category}"
    return base_name
