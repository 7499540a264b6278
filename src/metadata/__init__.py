"""
File ownership and permission metadata tracking.
"""

from .manager import MetadataManager, MetadataReport, RestoreReport, read_file_metadata

__all__ = ["MetadataManager", "MetadataReport", "RestoreReport", "read_file_metadata"]
