"""
Ordered pattern rules turning par2 output into a typed status.

``classify`` is deterministic: it reads nothing but its arguments. Logging of
unmatched output is left to the caller so the function stays pure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .models import (
    DAMAGED,
    ERROR,
    MISSING,
    PROTECT,
    PROTECTED,
    REPAIR,
    REPAIR_FAILED,
    REPAIRED,
    SKIPPED,
    UNKNOWN,
    VERIFY,
)

ALL_CORRECT_RE = re.compile(r"All files are correct|Repair is not required", re.IGNORECASE)
REPAIR_NEEDED_RE = re.compile(r"Repair is (?:required|possible)", re.IGNORECASE)
DAMAGED_TARGET_RE = re.compile(r'Target:\s*"(?P<name>[^"]+)"\s*-\s*damaged', re.IGNORECASE)
MISSING_TARGET_RE = re.compile(r'Target:\s*"(?P<name>[^"]+)"\s*-\s*missing', re.IGNORECASE)
NO_RECOVERY_RE = re.compile(
    r"No recovery data|Main packet not found|not found", re.IGNORECASE
)
REPAIR_COMPLETE_RE = re.compile(r"Repair complete", re.IGNORECASE)
REPAIR_IMPOSSIBLE_RE = re.compile(r"Repair (?:is )?not possible", re.IGNORECASE)
INSUFFICIENT_BLOCKS_RE = re.compile(
    r"too many|not enough recovery blocks|more recovery blocks", re.IGNORECASE
)
ALREADY_EXISTS_RE = re.compile(r"par2 files already exist|File already exists", re.IGNORECASE)

# Benign warnings that may accompany a nonzero exit from ``par2 create``.
ACCEPTABLE_WARNING_PATTERNS = (
    re.compile(r"Skipping 0 byte file", re.IGNORECASE),
    re.compile(r"WARNING: .+ is (?:a )?(?:0 byte|empty) file", re.IGNORECASE),
)
ERROR_PATTERNS = (
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"Could not", re.IGNORECASE),
    re.compile(r"out of memory", re.IGNORECASE),
    re.compile(r"failed", re.IGNORECASE),
)

VERIFY_PRECEDENCE = (DAMAGED, MISSING, ERROR, UNKNOWN, PROTECTED)
REPAIR_PRECEDENCE = (MISSING, REPAIR_FAILED, ERROR, UNKNOWN, REPAIRED)


@dataclass(frozen=True)
class Classification:
    """Status derived from tool output plus the targets it named."""

    status: str
    details: str
    targets: tuple[str, ...] = field(default_factory=tuple)


def is_acceptable_warning(output: str) -> bool:
    """True only for known benign warnings with no error text alongside them."""
    if not any(pattern.search(output) for pattern in ACCEPTABLE_WARNING_PATTERNS):
        return False
    remaining = output
    for pattern in ACCEPTABLE_WARNING_PATTERNS:
        remaining = pattern.sub("", remaining)
    return not any(pattern.search(remaining) for pattern in ERROR_PATTERNS)


def classify(output: str, kind: str, exit_status: Optional[int] = None) -> Classification:
    if kind == VERIFY:
        return _classify_verify(output, exit_status)
    if kind == REPAIR:
        return _classify_repair(output, exit_status)
    if kind == PROTECT:
        return _classify_create(output, exit_status)
    raise ValueError(f"Cannot classify output for operation kind {kind!r}")


def _targets(pattern: re.Pattern, output: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for match in pattern.finditer(output):
        seen.setdefault(match.group("name"), None)
    return tuple(seen)


def _classify_verify(output: str, exit_status: Optional[int]) -> Classification:
    damaged = _targets(DAMAGED_TARGET_RE, output)
    missing = _targets(MISSING_TARGET_RE, output)
    if ALL_CORRECT_RE.search(output) and not damaged and not missing:
        return Classification(PROTECTED, "All files are correct")
    if damaged:
        return Classification(DAMAGED, "Damaged: " + ", ".join(damaged), damaged + missing)
    if missing:
        return Classification(MISSING, "Missing: " + ", ".join(missing), missing)
    if REPAIR_NEEDED_RE.search(output):
        return Classification(DAMAGED, "Repair is required")
    if NO_RECOVERY_RE.search(output):
        return Classification(ERROR, "No recovery data found")
    if exit_status == 0:
        return Classification(PROTECTED, "All files are correct")
    return Classification(UNKNOWN, "Unrecognized par2 output")


def _classify_repair(output: str, exit_status: Optional[int]) -> Classification:
    if exit_status == 0 or REPAIR_COMPLETE_RE.search(output):
        return Classification(REPAIRED, "Repair complete")
    if REPAIR_IMPOSSIBLE_RE.search(output):
        if INSUFFICIENT_BLOCKS_RE.search(output):
            missing = _targets(MISSING_TARGET_RE, output)
            return Classification(MISSING, "Not enough recovery blocks to repair", missing)
        return Classification(REPAIR_FAILED, "Repair is not possible")
    return Classification(ERROR, "Repair failed")


def _classify_create(output: str, exit_status: Optional[int]) -> Classification:
    if ALREADY_EXISTS_RE.search(output):
        return Classification(SKIPPED, "par2 files already exist")
    if exit_status == 0:
        return Classification(PROTECTED, "Parity files created")
    if exit_status is not None and is_acceptable_warning(output):
        return Classification(PROTECTED, "Parity files created with acceptable warnings")
    return Classification(ERROR, "par2 create failed")


def reduce_statuses(kind: str, per_file: Mapping[str, str]) -> Classification:
    """Fold per-file statuses into one, keeping a per-file breakdown in the details."""
    precedence = REPAIR_PRECEDENCE if kind == REPAIR else VERIFY_PRECEDENCE
    statuses = list(per_file.values())
    if not statuses:
        return Classification(ERROR, "No parity sets to check")
    overall = statuses[0]
    for status in precedence:
        if status in statuses:
            overall = status
            break
    counts = {
        "Verified": sum(1 for status in statuses if status in (PROTECTED, REPAIRED)),
        "Damaged": statuses.count(DAMAGED),
        "Missing": statuses.count(MISSING),
        "Error": sum(1 for status in statuses if status in (ERROR, UNKNOWN, REPAIR_FAILED)),
    }
    summary = ", ".join(f"{label}: {count}" for label, count in counts.items())
    lines = [summary, ""]
    lines.extend(f"{name}: {status}" for name, status in per_file.items())
    targets = tuple(name for name, status in per_file.items() if status not in (PROTECTED, REPAIRED))
    return Classification(overall, "\n".join(lines), targets)
