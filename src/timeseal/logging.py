"""
Structured Logging for timeseal

Provides:
- Structured JSON output for production
- Human-readable console output for development
- Pipeline context propagation (principal, blob id, policy id, operation)
- Timing helper for pipeline steps

Key material, signatures and decrypted payloads must never be passed to the
logger; log identifiers and sizes only.
"""

import json
import logging
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOGGER_NAME = "timeseal"

LOG_LEVEL_ENV = "TIMESEAL_LOG_LEVEL"
LOG_FORMAT_ENV = "TIMESEAL_LOG_FORMAT"
LOG_FILE_ENV = "TIMESEAL_LOG_FILE"


class LogFormat(Enum):
    """Output format for logs."""
    CONSOLE = "console"
    JSON = "json"
    PRETTY_JSON = "pretty"


class LogLevel(Enum):
    """Log levels matching Python's logging module."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


@dataclass
class LogContext:
    """
    Context attached to every log entry emitted inside a pipeline.

    Fields left as None are omitted from output.
    """
    principal: Optional[str] = None
    operation: Optional[str] = None
    blob_id: Optional[str] = None
    policy_id: Optional[str] = None
    marker_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for name in ("principal", "operation", "blob_id", "policy_id", "marker_id"):
            value = getattr(self, name)
            if value:
                result[name] = value
        if self.extra:
            result.update(self.extra)
        return result

    def merge(self, other: "LogContext") -> "LogContext":
        """Merge with another context, preferring non-None values from other."""
        return LogContext(
            principal=other.principal or self.principal,
            operation=other.operation or self.operation,
            blob_id=other.blob_id or self.blob_id,
            policy_id=other.policy_id or self.policy_id,
            marker_id=other.marker_id or self.marker_id,
            extra={**self.extra, **other.extra},
        )


# Pipelines run one per thread, so context is thread-local.
_context_local = threading.local()


def get_current_log_context() -> LogContext:
    return getattr(_context_local, "context", LogContext())


def set_current_log_context(context: LogContext) -> None:
    _context_local.context = context


@contextmanager
def log_context(**kwargs):
    """
    Context manager for adding logging context.

    Unknown keyword arguments land in ``extra``.

    Usage:
        with log_context(principal=addr, operation="submit"):
            logger.info("Encrypting work log")
    """
    known = {k: kwargs.pop(k) for k in list(kwargs) if k in LogContext.__dataclass_fields__ and k != "extra"}
    old_context = get_current_log_context()
    new_context = old_context.merge(LogContext(extra=kwargs, **known))
    set_current_log_context(new_context)
    try:
        yield new_context
    finally:
        set_current_log_context(old_context)


def _short(value: str, length: int = 10) -> str:
    return value if len(value) <= length else value[:length] + "…"


class StructuredFormatter(logging.Formatter):
    """JSON formatter: one object per line with timestamp, level, message and context."""

    def __init__(self, pretty: bool = False):
        super().__init__()
        self.pretty = pretty

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context_dict = get_current_log_context().to_dict()
        if context_dict:
            entry["context"] = context_dict

        if hasattr(record, "extra_fields"):
            entry.update(record.extra_fields)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.pretty:
            return json.dumps(entry, indent=2, default=str)
        return json.dumps(entry, separators=(",", ":"), default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter with level colors when attached to a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%H:%M:%S")

        level = record.levelname
        if self.use_colors and level in self.COLORS:
            level = f"{self.COLORS[level]}{level:8}{self.RESET}"
        else:
            level = f"{level:8}"

        context = get_current_log_context()
        parts = []
        if context.operation:
            parts.append(f"op={context.operation}")
        if context.principal:
            parts.append(f"principal={_short(context.principal)}")
        if context.blob_id:
            parts.append(f"blob={_short(context.blob_id)}")
        context_str = f" [{', '.join(parts)}]" if parts else ""

        output = f"{timestamp} {level} {record.getMessage()}{context_str}"
        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)
        return output


class TimesealLogger:
    """
    Wrapper around logging.Logger with structured keyword fields.

        logger.info("Blob stored", blob_id=pointer.blob_id, size=len(data))
    """

    def __init__(self, name: str = LOGGER_NAME):
        self._logger = logging.getLogger(name)
        self._configured = False

    def configure(
        self,
        level: Union[str, LogLevel] = LogLevel.INFO,
        format: Union[str, LogFormat] = LogFormat.CONSOLE,
        log_file: Optional[Path] = None,
        propagate: bool = False,
    ) -> None:
        """
        Configure handlers and level.

        Args:
            level: Minimum log level
            format: Output format (console, json, pretty)
            log_file: Optional file to append JSON lines to
            propagate: Whether to propagate to parent loggers
        """
        if isinstance(level, str):
            level = LogLevel[level.upper()]
        self._logger.setLevel(level.value)
        self._logger.propagate = propagate
        for handler in self._logger.handlers:
            handler.close()
        self._logger.handlers.clear()

        if isinstance(format, str):
            format = LogFormat(format.lower())

        if format == LogFormat.JSON:
            formatter = StructuredFormatter(pretty=False)
        elif format == LogFormat.PRETTY_JSON:
            formatter = StructuredFormatter(pretty=True)
        else:
            formatter = ConsoleFormatter()

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        self._logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(StructuredFormatter(pretty=False))
            self._logger.addHandler(file_handler)

        self._configured = True

    def _ensure_configured(self) -> None:
        if not self._configured:
            log_file = os.environ.get(LOG_FILE_ENV)
            self.configure(
                level=os.environ.get(LOG_LEVEL_ENV, "WARNING"),
                format=os.environ.get(LOG_FORMAT_ENV, "console"),
                log_file=Path(log_file) if log_file else None,
            )

    def _log(self, level: int, msg: str, *args, exc_info: bool = False, **kwargs) -> None:
        self._ensure_configured()
        extra = {"extra_fields": kwargs} if kwargs else {}
        self._logger.log(level, msg, *args, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, exc_info: bool = False, **kwargs) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)

    @contextmanager
    def timed(self, operation: str, level: int = logging.DEBUG):
        """
        Time a pipeline step.

        Usage:
            with logger.timed("download"):
                data = publisher.download(blob_id)
        """
        start = time.perf_counter()
        self._log(level, f"Starting: {operation}")
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self._log(level, f"Completed: {operation}", duration_ms=round(elapsed * 1000, 2))


_loggers: Dict[str, TimesealLogger] = {}
_loggers_lock = threading.Lock()


def get_logger(name: str = LOGGER_NAME) -> TimesealLogger:
    """Return the shared logger for ``name``, creating it on first use."""
    with _loggers_lock:
        logger = _loggers.get(name)
        if logger is None:
            logger = TimesealLogger(name)
            _loggers[name] = logger
        return logger


def configure_logging(
    level: Union[str, LogLevel] = LogLevel.INFO,
    format: Union[str, LogFormat] = LogFormat.CONSOLE,
    log_file: Optional[Path] = None,
) -> TimesealLogger:
    """
    Configure the root timeseal logger.

    Example:
        configure_logging(level="DEBUG", format="json")
    """
    logger = get_logger()
    logger.configure(level=level, format=format, log_file=log_file)
    return logger


__all__ = [
    "LogFormat",
    "LogLevel",
    "LogContext",
    "TimesealLogger",
    "get_logger",
    "configure_logging",
    "log_context",
    "get_current_log_context",
    "set_current_log_context",
]
