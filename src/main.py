"""
Main entry point for the par2protect command line.
"""

import faulthandler
import signal
import sys
import threading
import traceback
from datetime import datetime
from pathlib import Path

from orchestrator.main import main

CRASH_DIR = Path("logs")


def _record_crash(exc_type, exc, tb) -> None:
    crash_log = CRASH_DIR / f"crash_traceback_{datetime.now():%Y%m%d}.log"
    with crash_log.open("a", encoding="utf-8") as handle:
        handle.write(f"\n{datetime.now().isoformat()} unhandled {exc_type.__name__}\n")
        traceback.print_exception(exc_type, exc, tb, file=handle)


def _install_crash_hooks() -> None:
    CRASH_DIR.mkdir(parents=True, exist_ok=True)
    faulthandler.enable(
        file=(CRASH_DIR / f"crash_traceback_{datetime.now():%Y%m%d}.log").open("a", encoding="utf-8"),
        all_threads=True,
    )

    def excepthook(exc_type, exc, tb):
        _record_crash(exc_type, exc, tb)
        sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = excepthook
    def thread_excepthook(args):
        _record_crash(args.exc_type, args.exc_value, args.exc_traceback)
        threading.__excepthook__(args)

    threading.excepthook = thread_excepthook


def _exit_on_sigterm(signum, frame):
    # Unwinds the processor so in-flight operations are marked failed.
    raise SystemExit(128 + signum)


if __name__ == "__main__":
    _install_crash_hooks()
    signal.signal(signal.SIGTERM, _exit_on_sigterm)
    raise SystemExit(main())
