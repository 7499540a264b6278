"""
Database package for schema creation and persistence helpers.
"""

from .manager import DatabaseManager, FileMetadataRecord, ProtectedItem
from .queue import Operation, OperationQueue
from .schema import create_databases
from .store import Store, backoff_delays, now_timestamp

__all__ = [
    "DatabaseManager",
    "FileMetadataRecord",
    "Operation",
    "OperationQueue",
    "ProtectedItem",
    "Store",
    "backoff_delays",
    "create_databases",
    "now_timestamp",
]
