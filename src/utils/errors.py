"""
Exception taxonomy shared by the store, runner, and queue processor.
"""

from __future__ import annotations

from typing import Optional, Sequence


class Par2ProtectError(Exception):
    """Base class for engine errors."""


class StorageError(Par2ProtectError):
    """Raised when the database is unavailable or stays locked after retries."""


class ValidationError(Par2ProtectError):
    """Raised when an operation is rejected before any subprocess is spawned."""


class NotFoundError(ValidationError):
    """Raised when an operation or protected item id does not exist."""


class ToolExecutionError(Par2ProtectError):
    """Raised when the par2 binary fails to spawn, times out, or exits abnormally."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        exit_status: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command) if command else []
        self.exit_status = exit_status
        self.output = output


class Par2FilesExist(ToolExecutionError):
    """Raised when par2 refuses to overwrite an existing recovery set."""


class ClassificationUnknown(Par2ProtectError):
    """Raised when tool output matches none of the known patterns."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class MetadataPartialFailure(Par2ProtectError):
    """Describes restore actions that failed while the rest were still applied."""

    def __init__(self, message: str, failures: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.failures = list(failures or [])


class ResourceUnavailable(Par2ProtectError):
    """Raised when admission control refuses to start another operation."""

    def __init__(self, message: str, reasons: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.reasons = list(reasons or [])
