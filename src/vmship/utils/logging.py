"""Logging setup: coloured console lines, JSON-lines files and bound context fields."""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

DEFAULT_LOG_DIR = '.vmship/logs'

# Record attributes written to the JSON log when present
STRUCTURED_FIELDS = ('resource_id', 'action', 'deployment_id', 'host', 'duration')

# Fields bound by log_context(); each thread starts with an empty mapping
_bound_fields: ContextVar[Dict[str, Any]] = ContextVar('vmship_log_fields', default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields to every record logged from the current thread.

    Nested contexts add to the outer one and are undone on exit. Values
    passed through ``extra=`` take precedence over bound ones.
    """
    token = _bound_fields.set({**_bound_fields.get(), **fields})
    try:
        yield
    finally:
        _bound_fields.reset(token)


def bound_fields() -> Dict[str, Any]:
    return dict(_bound_fields.get())


class ContextFilter(logging.Filter):
    """Copies fields bound with log_context() onto records passing a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _bound_fields.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONLinesFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.utcfromtimestamp(record.created).isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name)) for name in STRUCTURED_FIELDS if hasattr(record, name)
        )
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [subject] message``, coloured by level on a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: 36,
        logging.INFO: 32,
        logging.WARNING: 33,
        logging.ERROR: 31,
        logging.CRITICAL: 35,
    }

    def __init__(self, color: bool = False):
        super().__init__(datefmt='%H:%M:%S')
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8}"
        if self.color:
            level = f"\033[{self.LEVEL_COLORS.get(record.levelno, 0)}m{level}\033[0m"

        # The most specific identifier the record carries
        subject = next(
            (getattr(record, name) for name in ('resource_id', 'host', 'deployment_id') if hasattr(record, name)),
            None
        )
        message = record.getMessage()
        if subject:
            message = f"[{subject}] {message}"

        line = f"{self.formatTime(record, self.datefmt)} {level} {message}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = DEFAULT_LOG_DIR) -> None:
    """Configure the root logger.

    Args:
        log_level: Console level (debug, info, warning, error)
        log_dir: Directory for a daily JSON-lines file at DEBUG level, or None
            to log to the console only
    """
    level = getattr(logging, log_level.upper())
    context_filter = ContextFilter()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    # stderr keeps --json output on stdout clean
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter(color=sys.stderr.isatty()))
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path / f"vmship-{datetime.utcnow():%Y%m%d}.jsonl")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONLinesFormatter())
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)
        root_logger.setLevel(logging.DEBUG)

    for name in ('boto3', 'botocore', 'urllib3'):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
