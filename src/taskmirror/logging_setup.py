# src/taskmirror/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path


# Background sync machinery; INFO from these goes to the file log only.
CONSOLE_QUIET_LOGGERS: tuple[str, ...] = ("taskmirror.sync", "taskmirror.storage")


class _ConsoleNoiseFilter(logging.Filter):
    """
    Make interactive console usable:
    - allow engine, CLI and connector logs
    - keep sync loops and stores (probe, idle ticks, snapshots, failure
      injection) quiet unless WARNING+, or everything when verbose
    - suppress Python warnings (captured as 'py.warnings') unless ERROR+
    - suppress third-party noise unless ERROR+
    """

    def __init__(self, quiet: tuple[str, ...] = CONSOLE_QUIET_LOGGERS, *, verbose: bool = False) -> None:
        super().__init__()
        self.quiet = tuple(quiet)
        self.verbose = verbose

    def _is_quiet(self, name: str) -> bool:
        return any(name == q or name.startswith(q + ".") for q in self.quiet)

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name == "taskmirror" or name.startswith("taskmirror."):
            if self.verbose or not self._is_quiet(name):
                return True
            return record.levelno >= logging.WARNING

        if name == "py.warnings":
            return record.levelno >= logging.ERROR

        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskmirror",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    quiet_loggers: tuple[str, ...] = CONSOLE_QUIET_LOGGERS,
) -> None:
    """
    Configure logging with:
    - Console handler: readable + filtered for interactive use
    - File handler: full logs for debugging

    Call this ONCE, very early (before first logger.info).
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "taskmirror.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Remove any pre-existing handlers to avoid duplicates.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter(quiet_loggers, verbose=console_level <= logging.DEBUG))
    root.addHandler(ch)

    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    # Route warnings.warn(...) into logging as 'py.warnings'
    logging.captureWarnings(True)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
