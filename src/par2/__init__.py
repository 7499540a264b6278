"""
par2 command building, execution, and output classification.
"""

from .classifier import Classification, classify, is_acceptable_warning, reduce_statuses
from .commands import CommandBuilder, CreateOptions, ResourceLimits, batch_files, render
from .models import Mode, category_name, normalize_file_types, parity_dir_name
from .runner import CancelToken, CommandRunner, RunResult, run_command, terminate_process

__all__ = [
    "CancelToken",
    "Classification",
    "CommandRunner",
    "CommandBuilder",
    "CreateOptions",
    "Mode",
    "ResourceLimits",
    "RunResult",
    "batch_files",
    "category_name",
    "classify",
    "is_acceptable_warning",
    "normalize_file_types",
    "parity_dir_name",
    "reduce_statuses",
    "render",
    "run_command",
    "terminate_process",
]
