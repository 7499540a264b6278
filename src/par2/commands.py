"""
Command-line builders for par2 create, verify, and repair.
"""

from __future__ import annotations

import os
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from config import AppConfig

DEFAULT_MAX_ARGUMENTS = 32768
IO_PRIORITY_LEVELS = {"high": 0, "normal": 4, "low": 7}


@dataclass(frozen=True)
class ResourceLimits:
    """Resource flags passed to par2 and the optional ionice prefix."""

    threads: Optional[int] = None
    memory_mb: Optional[int] = None
    file_threads: Optional[int] = None
    io_priority: Optional[str] = None

    @classmethod
    def from_config(cls, config: AppConfig, cpu_count: Optional[int] = None) -> "ResourceLimits":
        cpu_value = config.get_int("resource_limits", "max_cpu_usage")
        threads = None
        if cpu_value is not None:
            if cpu_value > 100:
                threads = cpu_value
            elif cpu_value > 0:
                cores = cpu_count or os.cpu_count() or 1
                threads = max(1, round(cores * cpu_value / 100))
        io_priority = config.get("resource_limits", "io_priority", default=None)
        return cls(
            threads=threads,
            memory_mb=config.get_int("resource_limits", "max_memory_usage"),
            file_threads=config.get_int("resource_limits", "parallel_file_hashing"),
            io_priority=str(io_priority).lower() if io_priority else None,
        )


@dataclass(frozen=True)
class CreateOptions:
    """Create-only tuning flags."""

    redundancy: int = 10
    block_count: Optional[int] = None
    block_size: Optional[int] = None
    target_size_mb: Optional[int] = None
    recovery_files: Optional[int] = None

    @classmethod
    def from_parameters(cls, redundancy: int, advanced: Optional[dict]) -> "CreateOptions":
        advanced = advanced or {}

        def _int(key: str) -> Optional[int]:
            value = advanced.get(key)
            if value in (None, ""):
                return None
            return int(value)

        return cls(
            redundancy=int(redundancy),
            block_count=_int("block_count"),
            block_size=_int("block_size"),
            target_size_mb=_int("target_size"),
            recovery_files=_int("recovery_files"),
        )


def render(argv: Sequence[str]) -> str:
    return shlex.join(argv)


class CommandBuilder:
    """Build argv lists for the par2 binary."""

    def __init__(
        self,
        binary: str = "par2",
        limits: Optional[ResourceLimits] = None,
        quiet: bool = True,
        ionice_path: Optional[str] = None,
    ) -> None:
        self.binary = binary
        self.limits = limits or ResourceLimits()
        self.quiet = quiet
        self.ionice_path = ionice_path if ionice_path is not None else shutil.which("ionice")

    @classmethod
    def from_config(cls, config: AppConfig) -> "CommandBuilder":
        return cls(
            binary=str(config.get("par2", "binary", default="par2")),
            limits=ResourceLimits.from_config(config),
            quiet=not config.get_bool("debug", "par2_verbose"),
        )

    def create(
        self,
        par2_file: Path,
        files: Sequence[Path],
        base_path: Path,
        options: CreateOptions,
    ) -> list[str]:
        argv = self._prefix("c", create=True)
        argv.append(f"-r{options.redundancy}")
        if options.block_count:
            argv.append(f"-b{options.block_count}")
        elif options.block_size:
            argv.append(f"-s{options.block_size}")
        if options.target_size_mb:
            argv.append(f"-rm{options.target_size_mb}")
        if options.recovery_files:
            argv.append(f"-n{options.recovery_files}")
        argv.append(f"-B{base_path}")
        argv.append(str(par2_file))
        argv.append("--")
        argv.extend(str(path) for path in files)
        return argv

    def verify(self, par2_file: Path, base_path: Path) -> list[str]:
        argv = self._prefix("v")
        argv.extend([f"-B{base_path}", str(par2_file)])
        return argv

    def repair(self, par2_file: Path, base_path: Path) -> list[str]:
        argv = self._prefix("r")
        argv.extend([f"-B{base_path}", str(par2_file)])
        return argv

    def _prefix(self, subcommand: str, create: bool = False) -> list[str]:
        argv: list[str] = []
        level = IO_PRIORITY_LEVELS.get(self.limits.io_priority or "")
        if level is not None and self.ionice_path:
            argv.extend([self.ionice_path, "-c", "2", "-n", str(level)])
        argv.extend([self.binary, subcommand])
        if self.quiet:
            argv.append("-q")
        if self.limits.threads:
            argv.append(f"-t{self.limits.threads}")
        if self.limits.memory_mb:
            argv.append(f"-m{self.limits.memory_mb}")
        if create and self.limits.file_threads:
            argv.append(f"-T{self.limits.file_threads}")
        return argv


def batch_files(files: Sequence[Path], max_arguments: int = DEFAULT_MAX_ARGUMENTS) -> list[list[Path]]:
    """Split a file list so no single command exceeds max_arguments file entries."""
    if max_arguments <= 0:
        raise ValueError("max_arguments must be positive")
    return [list(files[index:index + max_arguments]) for index in range(0, len(files), max_arguments)]
