"""
Logging setup for the CinePi5 maintenance tools.

Both tools run interactively and from systemd timers. On a terminal the
console output is colored; under systemd (``JOURNAL_STREAM`` set) each
line carries a ``<N>`` syslog priority so journald keeps the level. The
rotating file log (``backup.log`` / ``update.log``) is plain text or JSON.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

from .exceptions import CinePiError

CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(filename)s:%(lineno)d] %(message)s"

# Libraries that log every request at INFO
QUIET_LOGGERS = ("urllib3", "botocore", "boto3", "s3transfer")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; LogContext fields go under ``data``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }

        context = getattr(record, "extra_data", None)
        if context:
            entry["data"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
            error = record.exc_info[1]
            if isinstance(error, CinePiError):
                entry["error"] = error.to_dict()

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Color the level name for terminal output."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        record.levelname = f"{self.COLORS.get(record.levelno, '')}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class JournalFormatter(logging.Formatter):
    """Prefix lines with the sd-daemon priority understood by journald."""

    PRIORITIES = {
        logging.DEBUG: 7,
        logging.INFO: 6,
        logging.WARNING: 4,
        logging.ERROR: 3,
        logging.CRITICAL: 2,
    }

    def format(self, record: logging.LogRecord) -> str:
        priority = self.PRIORITIES.get(record.levelno, 6)
        return f"<{priority}>{super().format(record)}"


def _console_formatter() -> logging.Formatter:
    if os.environ.get("JOURNAL_STREAM"):
        return JournalFormatter("%(name)s: %(message)s")
    if sys.stderr.isatty():
        return ColoredFormatter(CONSOLE_FORMAT)
    return logging.Formatter(CONSOLE_FORMAT)


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    json_logs: bool = False,
    log_dir: Optional[Path] = None,
    log_name: str = "cinepi5.log",
):
    """
    Configure the root logger for one tool invocation.

    Replaces any existing root handlers. The file handler always logs at
    DEBUG so a failed timer run can be diagnosed after the fact.

    Args:
        level: Console level
        log_file: Explicit log file path
        json_logs: Write the file log as JSON lines
        log_dir: Directory for the log file; ``log_name`` is created inside it
        log_name: File name used together with ``log_dir``
    """
    root = logging.getLogger()
    root.setLevel(min(level, logging.DEBUG) if (log_file or log_dir) else level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(_console_formatter())
    root.addHandler(console)

    if log_dir:
        log_file = Path(log_dir) / log_name

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=6,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter() if json_logs else logging.Formatter(FILE_FORMAT))
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LogContext:
    """
    Attach fields to every record created inside the block.

    Contexts nest; inner fields are merged over outer ones.

    Example:
        with LogContext(operation="update"):
            with LogContext(version="v5.2.0"):
                logger.info("Applying update")  # data: operation + version
    """

    def __init__(self, **fields):
        self.fields = fields
        self._previous = None

    def __enter__(self):
        self._previous = logging.getLogRecordFactory()
        previous = self._previous
        fields = self.fields

        def record_factory(*args, **kwargs):
            record = previous(*args, **kwargs)
            record.extra_data = {**getattr(record, "extra_data", {}), **fields}
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, *args):
        logging.setLogRecordFactory(self._previous)


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``cinepi5.`` namespace."""
    return logging.getLogger(f"cinepi5.{name}")
