"""Structured local logging and crash hook setup."""

from __future__ import annotations

import faulthandler
import json
import logging
import logging.handlers
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from .config import config_root


_LOGGER_NAME = "sortlink"
_LOG_FILE = "sortlink.log"
_EXTRA_FIELDS = ("event", "state", "attempt", "endpoint", "error", "local_port", "crash_id")

_fault_stream: IO[str] | None = None


def log_dir() -> Path:
    path = config_root() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


class JsonFormatter(logging.Formatter):
    """One JSON object per record; known ``extra=`` fields are copied through."""

    def format(self, record: logging.LogRecord) -> str:
        row: dict[str, Any] = {
            "ts_utc": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        row.update({key: getattr(record, key) for key in _EXTRA_FIELDS if hasattr(record, key)})
        if record.exc_info:
            row["exc"] = self.formatException(record.exc_info)
        return json.dumps(row, ensure_ascii=True, default=str)


def _rotating_file_handler(keep_files: int) -> logging.Handler:
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(log_dir() / _LOG_FILE),
        when="midnight",
        backupCount=max(2, keep_files),
        encoding="utf-8",
    )
    handler.setFormatter(JsonFormatter())
    return handler


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s %(message)s"))
    return handler


def configure_logging(keep_files: int = 7, console: bool = True, level: int = logging.INFO) -> logging.Logger:
    root = get_logger()
    if root.handlers:
        return root

    root.setLevel(level)
    root.addHandler(_rotating_file_handler(keep_files))
    if console:
        root.addHandler(_console_handler())

    root.info("logging configured", extra={"event": "logging_configured"})
    return root


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME)


def report_crash(kind: str, exc_info: tuple[Any, Any, Any]) -> str:
    """Log an uncaught exception at CRITICAL and return the crash id written with it."""
    crash_id = str(uuid.uuid4())
    get_logger().critical(
        "%s crash_id=%s",
        kind.replace("_", " "),
        crash_id,
        exc_info=exc_info,
        extra={"event": kind, "crash_id": crash_id},
    )
    return crash_id


def install_crash_hooks() -> None:
    global _fault_stream

    sys.excepthook = lambda exc_type, exc, tb: report_crash("uncaught_exception", (exc_type, exc, tb))
    threading.excepthook = lambda args: report_crash(
        "thread_exception", (args.exc_type, args.exc_value, args.exc_traceback)
    )

    if _fault_stream is None:
        _fault_stream = (log_dir() / "fault.log").open("a", encoding="utf-8")
        faulthandler.enable(file=_fault_stream, all_threads=True)
        get_logger().info("fault handler enabled", extra={"event": "fault_handler_enabled"})
