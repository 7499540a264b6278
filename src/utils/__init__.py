"""
Utility helpers for the par2protect engine.
"""

from .errors import Par2ProtectError
from .file_walker import FileEnumerator
from .instance_guard import LeaderElection, PidFileElection
from .logging_setup import setup_logging
from .resource_monitor import Availability, ResourceMonitor

__all__ = [
    "Availability",
    "FileEnumerator",
    "LeaderElection",
    "Par2ProtectError",
    "PidFileElection",
    "ResourceMonitor",
    "setup_logging",
]
