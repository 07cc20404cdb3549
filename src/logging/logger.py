# src/logging/logger.py — v2
"""Logger factory with JSON and text formatters.

Every record is stamped with the session and stage that were active when it
was emitted, so interleaved stage output can be told apart. Records whose
exception carries a failure kind (``ForgeError``) also expose that kind.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

from dreamforge.logging.context import get_context

ROOT_LOGGER = "dreamforge"

# SDK transport loggers that drown out stage output at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "google.generativeai")


def _created(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


def _error_kind(record: logging.LogRecord) -> str | None:
    if not record.exc_info or record.exc_info[1] is None:
        return None
    kind = getattr(record.exc_info[1], "kind", None)
    return getattr(kind, "value", None)


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": _created(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = get_context().as_dict()
        if context:
            entry["context"] = context

        # logger.info(..., extra={"data": {...}})
        data = getattr(record, "data", None)
        if data:
            entry["data"] = data

        kind = _error_kind(record)
        if kind:
            entry["error_kind"] = kind
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Single-line terminal output: time, level, session, stage, message."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_context()
        line = f"{_created(record):%H:%M:%S} {record.levelname[:4]:<4} {record.name}"
        if ctx.session_id:
            line += f" [{ctx.session_id[:8]}]"
        if ctx.stage:
            line += f" ({ctx.stage})"
        line += f": {record.getMessage()}"

        kind = _error_kind(record)
        if kind:
            line += f" <{kind}>"
        if record.exc_info and record.exc_info[1] is not None and record.levelno >= logging.ERROR:
            line += "\n" + self.formatException(record.exc_info)
        return line


FORMATTERS: dict[str, type[logging.Formatter]] = {
    "json": JsonFormatter,
    "text": TextFormatter,
}


def get_logger(name: str) -> logging.Logger:
    """Child of the dreamforge logger; configured by setup_logging()."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: str | None = None,
    rotation: str = "10MB",
    retention: int = 30,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Configure the dreamforge logger and return it.

    Args:
        level: DEBUG, INFO, WARNING or ERROR.
        log_format: Key of ``FORMATTERS``.
        log_file: Optional rotating log file; console output always goes to
            ``stream`` (stderr by default) so stdout stays free for results.
        rotation: Max file size before rotation (e.g. "10MB").
        retention: Number of rotated files to keep.

    Raises:
        ValueError: Unknown log format.
    """
    if log_format not in FORMATTERS:
        raise ValueError(f"Unknown log format {log_format!r}; expected one of {sorted(FORMATTERS)}")
    formatter = FORMATTERS[log_format]()

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # Re-init must not stack handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        from dreamforge.logging.handlers import create_rotating_handler

        file_handler = create_rotating_handler(log_file, rotation=rotation, retention=retention)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
