"""
Structured logging configuration for the conversion service.

Log entries are emitted as one JSON object per line on stderr (or as short
human-readable lines when ``ASCIIDOCTOR_LOG_FORMAT=text``). Error-bearing
entries carry a typed descriptor with the error kind and remediation text.
"""

import json
import logging
import logging.handlers
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from asciidoctor_api.core.config import Settings
from asciidoctor_api.core.error_handling import ErrorDetail, ErrorKind, describe_error

# Context variable for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

ROOT_LOGGER_NAME = "asciidoctor_api"


def _component_of(record: logging.LogRecord) -> str:
    component = getattr(record, "component", None)
    if component:
        return str(component)
    return record.name.split(".")[-1]


def _error_of(record: logging.LogRecord) -> Optional[Dict[str, Any]]:
    detail: Optional[ErrorDetail] = getattr(record, "error_detail", None)
    if detail is None and record.exc_info and record.levelno >= logging.ERROR:
        detail = describe_error(record.exc_info[1], component=_component_of(record))
    if detail is None:
        return None
    error = detail.to_dict()
    if record.exc_info and "stack" not in error:
        error["stack"] = "".join(traceback.format_exception(*record.exc_info))
    return error


class SimpleFormatter(logging.Formatter):
    """Simple human-readable formatter for console output."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%H:%M:%S")
        level = record.levelname.ljust(5)
        request_id = request_id_var.get()
        context_str = f"[req:{request_id}] " if request_id else ""
        line = f"{timestamp} {level} {context_str}{_component_of(record)}: {record.getMessage()}"

        error = _error_of(record)
        if error:
            line += f" | {error['kind']}: {error['message']} -> {error['actionable']}"
        return line


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "component": _component_of(record),
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None) or request_id_var.get()
        if request_id:
            entry["request_id"] = request_id

        fields = getattr(record, "fields", None)
        if fields:
            entry["fields"] = dict(fields)

        try:
            error = _error_of(record)
            if error:
                entry["error"] = error
            return json.dumps(entry, default=str, ensure_ascii=False)
        except Exception:
            # Never let a log call fail; degrade to a plain line
            return f"[{entry['timestamp']}] {entry['level']} [{entry['component']}] {entry['message']}"


class ComponentLogger:
    """Logger bound to one component of the service.

    ``log(level, message, error=None, fields=None)`` is the single entry point;
    the level helpers only forward to it.
    """

    def __init__(self, component: str):
        self.component = component
        self.logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")

    def log(
        self,
        level: int,
        message: str,
        error: Optional[BaseException] = None,
        fields: Optional[Mapping[str, Any]] = None,
        *,
        kind: Optional[ErrorKind] = None,
        operation: Optional[str] = None,
        exc_info: bool = False,
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra: Dict[str, Any] = {"component": self.component}
        if fields:
            extra["fields"] = dict(fields)
        if error is not None:
            extra["error_detail"] = describe_error(
                error, kind=kind, component=self.component, operation=operation
            )
        exc = (type(error), error, error.__traceback__) if exc_info and error is not None else None
        self.logger.log(level, message, extra=extra, exc_info=exc)

    def debug(self, message: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self.log(logging.DEBUG, message, fields=fields)

    def info(self, message: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self.log(logging.INFO, message, fields=fields)

    def warning(
        self,
        message: str,
        fields: Optional[Mapping[str, Any]] = None,
        error: Optional[BaseException] = None,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        self.log(logging.WARNING, message, error=error, fields=fields, kind=kind)

    def error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        fields: Optional[Mapping[str, Any]] = None,
        *,
        kind: Optional[ErrorKind] = None,
        operation: Optional[str] = None,
        exc_info: bool = False,
    ) -> None:
        self.log(
            logging.ERROR,
            message,
            error=error,
            fields=fields,
            kind=kind,
            operation=operation,
            exc_info=exc_info,
        )


def get_logger(component: str) -> ComponentLogger:
    """Get a component logger."""
    return ComponentLogger(component)


def setup_logging(settings: Settings) -> None:
    """Configure the root logger from settings."""
    root_logger = logging.getLogger()
    level = logging.DEBUG if settings.debug else logging.INFO
    root_logger.setLevel(level)

    # Clear existing handlers
    root_logger.handlers.clear()

    formatter: logging.Formatter
    if settings.log_format == "text":
        formatter = SimpleFormatter()
    else:
        formatter = StructuredFormatter()

    # Containers capture stderr
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if settings.log_dir:
        logs_dir = Path(settings.log_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)

        app_handler = logging.handlers.RotatingFileHandler(
            logs_dir / "application.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        app_handler.setLevel(level)
        app_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(app_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            logs_dir / "errors.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=10,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(error_handler)

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    get_logger("logging").info(
        "Logging system initialized",
        {
            "debug_mode": settings.debug,
            "format": settings.log_format,
            "logs_directory": settings.log_dir,
            "handlers_count": len(root_logger.handlers),
        },
    )


def set_request_context(request_id: Optional[str]) -> None:
    """Set request context for logging."""
    request_id_var.set(request_id)


def clear_request_context() -> None:
    """Clear request context."""
    request_id_var.set(None)


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())
