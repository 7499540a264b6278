"""
Logging configuration for the par2protect engine.

Three channels share one formatter:

* ``par2protect``: console, a daily log, and an errors-only log.
* ``par2protect.performance``: per-operation timings, not propagated.
* ``par2protect.tool``: raw par2 output, not propagated.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

CHANNELS = {
    "main": ("par2protect", "par2protect"),
    "performance": ("par2protect.performance", "performance_log"),
    "tool": ("par2protect.tool", "par2_output"),
}


def _attach(
    logger: logging.Logger,
    formatter: logging.Formatter,
    path: Optional[Path] = None,
    level: int = logging.NOTSET,
) -> None:
    handler: logging.Handler = logging.FileHandler(path, encoding="utf-8") if path else logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def setup_logging(log_dir: Path, level: int = logging.INFO) -> Dict[str, logging.Logger]:
    """Configure the named loggers once per process and return them by channel."""
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d")
    formatter = logging.Formatter(LOG_FORMAT)
    loggers: Dict[str, logging.Logger] = {}

    for channel, (name, prefix) in CHANNELS.items():
        logger = logging.getLogger(name)
        loggers[channel] = logger
        if logger.handlers:
            continue
        _attach(logger, formatter, log_dir / f"{prefix}_{stamp}.log")
        if channel == "main":
            logger.setLevel(level)
            _attach(logger, formatter)
            _attach(logger, formatter, log_dir / f"error_log_{stamp}.log", logging.ERROR)
        else:
            logger.setLevel(logging.DEBUG if channel == "tool" else logging.INFO)
            logger.propagate = False

    return loggers
