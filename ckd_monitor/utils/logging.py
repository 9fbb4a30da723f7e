"""
Logging Configuration

Console output is colour-coded by level and tagged with the worker thread,
so interleaved lines from the scan pool can be told apart. An optional
plain-text file handler mirrors the same records.
"""
import logging
import sys
from typing import Optional
from datetime import datetime, timezone

_HANDLER_TAG = "_ckd_monitor"

# SQLAlchemy echoes every statement at INFO when engines are built with echo=True
_NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool")


class MonitorFormatter(logging.Formatter):
    """Single-line console records: time, level, thread, logger, message."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%S.%fZ"
        )
        line = (
            f"[{stamp}] {record.levelname:8} "
            f"({record.threadName}) [{record.name}] {record.getMessage()}"
        )
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        if not self.use_color:
            return line
        return f"{self.LEVEL_COLORS.get(record.levelno, '')}{line}{self.RESET}"


def _tagged(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_TAG, True)
    return handler


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure the root logger for the monitoring core.

    Calling it again replaces only the handlers it installed earlier, so
    handlers added by a host application or test runner survive.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown → INFO)
        log_file: Optional path; records are appended as plain text
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for handler in [h for h in root.handlers if getattr(h, _HANDLER_TAG, False)]:
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(MonitorFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(_tagged(console))

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s'
        ))
        root.addHandler(_tagged(file_handler))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Module logger; pass ``__name__``."""
    return logging.getLogger(name)
