"""Logging setup for the termnexus daemon and operator CLI.

Every module logger hangs off the ``termnexus`` logger. The console handler
writes short lines to stderr; the optional log file rotates by size and keeps
timestamps, pids and source lines for later inspection.
"""

from __future__ import annotations

import logging as py_logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TextIO

ROOT_LOGGER = "termnexus"
LEVEL_NAMES = ("DEBUG", "INFO", "WARN", "ERROR")
DEFAULT_LOG_PATH = Path("~/.config/termnexus/logs/termnexus.log")
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 3

_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s pid=%(process)d %(levelname)s %(name)s:%(lineno)d %(message)s"


def normalize_level(value: str) -> str:
    """Upper-case a level name and fold ``WARNING`` into ``WARN``."""
    normalized = value.strip().upper()
    return "WARN" if normalized == "WARNING" else normalized


def resolve_log_path(value: str | Path) -> Path:
    path = Path(value)
    try:
        path = path.expanduser()
    except RuntimeError:
        # No resolvable home; keep the literal path.
        pass
    return path if path.is_absolute() else path.resolve()


def default_log_path() -> Path:
    return resolve_log_path(DEFAULT_LOG_PATH)


def _file_handler(path: Path, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    handler.setFormatter(py_logging.Formatter(_FILE_FORMAT))
    return handler


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
) -> py_logging.Logger:
    """(Re)install the console and file handlers on the ``termnexus`` logger.

    Unknown level names fall back to INFO. A log file that cannot be opened
    leaves console logging in place and is reported as a warning.
    """
    logger = py_logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(_LEVELS.get(normalize_level(level), py_logging.INFO))
    logger.propagate = False

    console = py_logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(py_logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is None:
        return logger
    path = resolve_log_path(log_file)
    try:
        logger.addHandler(_file_handler(path, max_bytes, backup_count))
    except OSError as exc:
        logger.warning("Log file %s unavailable (%s); logging to stderr only", path, exc)
    return logger
