"""
Structured Logging Configuration for Cross-Seeder
Console and rotating-file output, text or JSON, with scan context
(instance, torrent, candidate, phase) attached to every record.
"""

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Per-task, so concurrent scans of different instances never mix fields
_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "cross_seed_log_context", default={}
)

SCAN_FIELDS = (
    "instance_id",
    "torrent_hash",
    "torrent_name",
    "candidate",
    "phase",
    "decision",
)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_context() -> Dict[str, Any]:
    """Fields currently attached to records logged from this task."""
    return dict(_log_context.get())


def clear_log_context() -> None:
    _log_context.set({})


class ContextFilter(logging.Filter):
    """Copy the task's scan context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with scan fields when present."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (name, getattr(record, name))
            for name in SCAN_FIELDS
            if getattr(record, name, None) is not None
        )

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception_type"] = record.exc_info[0].__name__
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class ColoredFormatter(logging.Formatter):
    """Human-readable console output; level names are colored on a TTY."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    # Shown as a [key=value] suffix
    SUFFIX_FIELDS = ("instance_id", "torrent_name", "phase")

    def __init__(self, use_colors: bool = True):
        super().__init__(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        color = self.LEVEL_COLORS.get(record.levelno) if self.use_colors else None
        if color:
            message = message.replace(record.levelname, f"{color}{record.levelname}{self.RESET}", 1)

        suffix = ", ".join(
            f"{name}={getattr(record, name)}"
            for name in self.SUFFIX_FIELDS
            if getattr(record, name, None)
        )
        return f"{message} [{suffix}]" if suffix else message


# Quieter defaults for chatty libraries
COMPONENT_LOG_LEVELS = {
    "cross_seeder": "INFO",
    "cross_seeder.persistence": "WARNING",
    "cross_seeder.retry": "INFO",
    "aiohttp": "WARNING",
    "aiosqlite": "WARNING",
    "uvicorn.access": "WARNING",
    "uvicorn.error": "INFO",
}


def _formatter(log_format: str, use_colors: bool, for_file: bool) -> logging.Formatter:
    if log_format == "json":
        return JSONFormatter()
    if for_file:
        return logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)
    return ColoredFormatter(use_colors=use_colors)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Replace the root logger's handlers with console (and optionally file) output.

    Args:
        log_level: Root log level name
        log_file: Rotating log file path; parent directories are created
        log_format: "text" or "json"
        max_file_size_mb: Size at which the log file rotates
        backup_count: Rotated files to keep
        use_colors: Color level names when stdout is a terminal

    Returns:
        The root logger
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    context_filter = ContextFilter()
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        ))

    for handler in handlers:
        is_file = isinstance(handler, logging.handlers.RotatingFileHandler)
        handler.setFormatter(_formatter(log_format, use_colors, for_file=is_file))
        handler.addFilter(context_filter)
        root.addHandler(handler)

    for name, level in COMPONENT_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(level)

    logging.getLogger(__name__).info(
        f"Logging configured: level={log_level}, format={log_format}, file={log_file or 'none'}"
    )
    return root


class LogContext:
    """
    Attach fields to every record logged inside the block.

    Usage:
        with LogContext(instance_id=1, phase="search"):
            logger.info("Searching")
    """

    def __init__(self, **fields):
        self.fields = fields
        self._token: Optional[contextvars.Token] = None

    def __enter__(self):
        self._token = _log_context.set({**_log_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
        return False
