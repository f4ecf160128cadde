#!/usr/bin/env python3
"""
DDP driver logging configuration

Centralized logging setup for consistent formatting across the driver.
Console output is colored in development; set DDP_LOG_FILE to also write a
plain log file.

Usage:
    from shared.log import get_logger

    logger = get_logger(__name__)
    logger.info("Connecting...")
    logger.warning("Unmatched result", extra={"call_id": "12", "frame_kind": "result"})
"""

from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import Optional, Dict, Any
import os


# ========================================
#           LOGGING FORMATTERS
# ========================================

# extra={} keys rendered as a "[k=v ...]" prefix, with their short labels
_CONTEXT_FIELDS = (
    ("session_id", "session"),
    ("call_id", "call"),
    ("sub_id", "sub"),
    ("frame_kind", "frame"),
    ("room_id", "room"),
)


def _with_context(record: logging.LogRecord) -> str:
    parts = []
    for attr, label in _CONTEXT_FIELDS:
        value = getattr(record, attr, None)
        if value is not None:
            parts.append(f"{label}={value}")
    message = record.getMessage()
    if parts:
        return f"[{' '.join(parts)}] {message}"
    return message


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output with DDP context"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy so other handlers see the original record
        record = logging.makeLogRecord(record.__dict__)
        record.msg = _with_context(record)
        record.args = None
        if record.levelname in self.COLORS:
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.COLORS['RESET']}"
        return super().format(record)


class GenericFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        record.msg = _with_context(record)
        record.args = None
        return super().format(record)


# ========================================
#           LOGGING CONFIGURATION
# ========================================

_loggers_configured = set()


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger for the given module.

    Args:
        name: Usually __name__ from the calling module
        level: Override log level ("DEBUG", "INFO", "WARNING", "ERROR")

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure each logger once
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)

    return logger


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    """Configure a logger with appropriate handlers and formatters"""

    logger.setLevel(_get_log_level(level))

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    _add_console_handler(logger, colored=_is_development())
    log_file = os.getenv("DDP_LOG_FILE")
    if log_file:
        _add_file_handler(logger, Path(log_file))

    # Records still reach the root logger (pytest's caplog listens there)
    logger.propagate = 'pytest' in sys.modules


def _get_log_level(level: Optional[str] = None) -> int:
    """Determine appropriate log level"""

    level = level or os.getenv("DDP_LOG_LEVEL")
    if level:
        return getattr(logging, level.upper(), logging.INFO)

    return logging.DEBUG if _is_development() else logging.INFO


def _is_development() -> bool:
    """Detect if we're in development mode"""
    return (
        os.getenv('PYTHON_ENV', '').lower() in ['dev', 'development'] or
        'pytest' in sys.modules
    )


def _add_console_handler(logger: logging.Logger, colored: bool = True) -> None:
    """Add console handler with appropriate formatter"""

    fmt = '[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
    handler = logging.StreamHandler(sys.stderr)

    if colored and _supports_color():
        formatter = ColoredFormatter(fmt=fmt, datefmt='%H:%M:%S')
    else:
        formatter = GenericFormatter(fmt=fmt, datefmt='%Y-%m-%d %H:%M:%S')

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _add_file_handler(logger: logging.Logger, log_file: Path) -> None:
    """Add plain file handler"""

    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setFormatter(GenericFormatter(
        fmt='%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(handler)


def _supports_color() -> bool:
    """Check if terminal supports color output"""

    if not (hasattr(sys.stderr, "isatty") and sys.stderr.isatty()):
        return False

    if os.getenv("TERM", "") == "dumb":
        return False

    if sys.platform == "win32":
        return os.getenv("ANSICON") is not None or os.getenv("WT_SESSION") is not None or os.getenv("TERM_PROGRAM") == "vscode"

    return True

# ========================================
#           CONVENIENCE FUNCTIONS
# ========================================

def configure_root_logging(level: str = "INFO") -> None:
    """
    Configure root logging for the entire application.
    Call this once at application startup (the CLI does).
    """
    root_logger = logging.getLogger()
    _configure_logger(root_logger, level)


def log_frame(logger: logging.Logger, level: str, message: str,
              frame: Optional[Dict[str, Any]] = None,
              **context: Any) -> None:
    """
    Log a DDP frame event with structured context.

    Args:
        logger: Logger instance
        level: Log level ("debug", "info", "warning", "error")
        message: Log message
        frame: Raw frame dict for automatic context extraction
        **context: Additional context fields (session_id, call_id, sub_id, room_id)

    Example:
        log_frame(logger, "warning", "Dropping result for unknown call",
                  frame={"msg": "result", "id": "42"})
    """
    extra_context: Dict[str, Any] = {}

    if frame:
        extra_context['frame_kind'] = frame.get('msg')
        if frame.get('msg') in ('result', 'nosub', 'ping', 'pong'):
            extra_context['call_id'] = frame.get('id')

    extra_context.update(context)

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra_context)
