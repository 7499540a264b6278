"""
Protect, verify, repair, and remove operations driven by the queue processor.
"""

from .base import OperationResult, RunContext
from .protect import ProtectionService
from .remove import RemovalService
from .verify import VerificationService

__all__ = [
    "OperationResult",
    "ProtectionService",
    "RemovalService",
    "RunContext",
    "VerificationService",
]
