"""
YAML configuration for the par2protect engine, layered over built-in defaults.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

import yaml

DEFAULT_CONFIG_PATH = Path("config.yaml")
ENV_CONFIG_PATH = "PAR2PROTECT_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "paths": {"logs": "logs", "data": "data"},
    "databases": {"main": "data/par2protect.db", "queue": "data/queue.db"},
    "database": {
        "busy_timeout_ms": 5000,
        "initial_retry_delay_ms": 50,
        "max_retry_delay_ms": 1000,
        "max_retries": 5,
    },
    "par2": {"binary": "par2", "max_arguments": 32768},
    "protection": {"default_redundancy": 10, "parity_dir": ".parity", "verify_cron": "-1"},
    "resource_limits": {
        "max_cpu_percent": 80,
        "max_memory_percent": 80,
        "max_io_percent": 80,
        "io_reference_mbps": 100,
        "adaptive": True,
        "adaptive_interval_seconds": 300,
        "sample_interval_seconds": 5,
    },
    "queue": {
        "max_concurrent_operations": 2,
        "max_execution_time": 1800,
        "operation_timeout_seconds": 3600,
        "stuck_timeout_seconds": 3600,
        "poll_interval_seconds": 5,
        "lock_file": "data/queue_processor.lock",
        "cleanup_days": 7,
    },
    "debug": {"par2_verbose": False},
}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def merge_settings(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge override onto a copy of base; override wins for non-mapping values."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass(frozen=True)
class AppConfig:
    """Merged configuration with typed lookups and path resolution."""

    root_dir: Path
    raw: Dict[str, Any]
    source: Path | None = None

    @classmethod
    def load(cls, path: Path | None = None) -> "AppConfig":
        """Load YAML from path, ``$PAR2PROTECT_CONFIG``, or ./config.yaml."""
        config_value = os.environ.get(ENV_CONFIG_PATH)
        config_path = path
        if config_path is None:
            config_path = Path(config_value) if config_value else DEFAULT_CONFIG_PATH
        config_path = Path(config_path).expanduser()
        if not config_path.is_absolute():
            config_path = (Path.cwd() / config_path).resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        return cls(root_dir=config_path.parent, raw=merge_settings(DEFAULTS, data), source=config_path)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], root_dir: Path | None = None) -> "AppConfig":
        return cls(root_dir=root_dir or Path.cwd(), raw=merge_settings(DEFAULTS, data))

    def get(self, *keys: str, default: Any = None) -> Any:
        node: Any = self.raw
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def get_int(self, *keys: str, default: int | None = None) -> int | None:
        value = self.get(*keys, default=default)
        if value in (None, ""):
            return default
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{'.'.join(keys)} must be an integer, got {value!r}") from exc

    def get_float(self, *keys: str, default: float | None = None) -> float | None:
        value = self.get(*keys, default=default)
        if value in (None, ""):
            return default
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{'.'.join(keys)} must be a number, got {value!r}") from exc

    def get_bool(self, *keys: str, default: bool = False) -> bool:
        value = self.get(*keys, default=default)
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        raise ValueError(f"{'.'.join(keys)} must be a boolean, got {value!r}")

    def resolve_path(self, *keys: str, default: str | None = None) -> Path:
        """Resolve a configured path against the config file's directory."""
        value = self.get(*keys, default=default)
        if value is None:
            raise KeyError(f"Missing config path for {'.'.join(keys)}")
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = (self.root_dir / path).resolve()
        return path

    def db_paths(self) -> Dict[str, Path]:
        return {
            "main": self.resolve_path("databases", "main"),
            "queue": self.resolve_path("databases", "queue"),
        }


def ensure_directories(paths: Iterable[Path]) -> None:
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)
