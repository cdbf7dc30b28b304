"""
Error taxonomy and handling for the conversion service.

Every error carries a fixed-vocabulary kind. Each kind maps to an HTTP status
and to static remediation text so operators can act on a log line without
reading source.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Error kinds used in logs and for status mapping."""
    INVALID_REQUEST = "invalid_request"
    CONTENT_TOO_LARGE = "content_too_large"
    VALIDATION_FAILED = "validation_failed"
    CONVERSION_TIMEOUT = "conversion_timeout"
    CONVERSION_FAILED = "conversion_failed"
    FILE_OPERATION_ERROR = "file_operation_error"
    ENCODING_ERROR = "encoding_error"
    INITIALIZATION_ERROR = "initialization_error"
    UNEXPECTED_FAULT = "unexpected_fault"
    SHUTDOWN_ERROR = "shutdown_error"


ACTIONABLE_GUIDANCE: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_REQUEST: (
        "Invalid request received. Check: 1) Request body is valid JSON, "
        "2) Required fields (content, title) are present, 3) Field types match the documented payload"
    ),
    ErrorKind.CONTENT_TOO_LARGE: (
        "Document content exceeds the configured size ceiling. Split the document into smaller "
        "parts or raise ASCIIDOCTOR_MAX_CONTENT_SIZE"
    ),
    ErrorKind.VALIDATION_FAILED: (
        "The AsciiDoc content could not be validated. Check that the document body is not empty "
        "and is valid UTF-8 text"
    ),
    ErrorKind.CONVERSION_TIMEOUT: (
        "The document conversion exceeded the timeout limit. Try: 1) Breaking the document into "
        "smaller sections, 2) Increasing ASCIIDOCTOR_CONVERSION_TIMEOUT, 3) Checking server "
        "resources (CPU/memory)"
    ),
    ErrorKind.CONVERSION_FAILED: (
        "The document conversion failed. Check: 1) AsciiDoc syntax is valid, 2) Required images "
        "are accessible, 3) asciidoctor and ebook-convert are installed and working "
        "(run: asciidoctor --version)"
    ),
    ErrorKind.FILE_OPERATION_ERROR: (
        "File operation failed. Check: 1) Disk space is available, 2) File permissions are "
        "correct, 3) The TMPDIR directory is writable"
    ),
    ErrorKind.ENCODING_ERROR: (
        "A response could not be encoded. Check the server logs for the offending payload"
    ),
    ErrorKind.INITIALIZATION_ERROR: (
        "Server initialization failed. Check: 1) asciidoctor is installed or BUNDLE_GEMFILE/"
        "BUNDLE_PATH point at a working bundle, 2) ASCIIDOCTOR_SEARCH_PATHS is correct, "
        "3) The port is not already in use"
    ),
    ErrorKind.UNEXPECTED_FAULT: (
        "An unexpected fault occurred while handling a request. The stack trace has been "
        "logged; report it together with the request id"
    ),
    ErrorKind.SHUTDOWN_ERROR: (
        "Error during server shutdown. This may indicate: 1) Active requests were not completed, "
        "2) Resources were not properly released"
    ),
}

DEFAULT_GUIDANCE = (
    "Check server logs and system status. If the error persists, restart the container and "
    "check its logs."
)

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorKind.VALIDATION_FAILED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONTENT_TOO_LARGE: 413,
    ErrorKind.CONVERSION_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


def get_actionable_guidance(kind: Optional[ErrorKind]) -> str:
    """Return the remediation text for an error kind."""
    if kind is None:
        return DEFAULT_GUIDANCE
    return ACTIONABLE_GUIDANCE.get(ErrorKind(kind), DEFAULT_GUIDANCE)


def status_for(kind: ErrorKind) -> int:
    return STATUS_BY_KIND.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ErrorDetail:
    """Typed error descriptor attached to error-bearing log entries."""
    kind: str
    message: str
    actionable: str
    component: Optional[str] = None
    operation: Optional[str] = None
    stack: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind,
            "message": self.message,
            "actionable": self.actionable,
        }
        if self.component:
            data["component"] = self.component
        if self.operation:
            data["operation"] = self.operation
        if self.stack:
            data["stack"] = self.stack
        return data


class ApplicationError(Exception):
    """Base application error.

    ``title`` is the short public error string returned in the ``error`` field of
    the response envelope. ``message`` is logged; it is also the public
    explanation unless the class defines a fixed ``public_message``.
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED_FAULT
    title: str = "Internal server error"
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        title: Optional[str] = None,
        public_message: Optional[str] = None,
        component: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        if title:
            self.title = title
        if public_message:
            self.public_message = public_message
        self.component = component
        self.operation = operation
        self.details = details or {}
        self.cause = cause

    @property
    def status_code(self) -> int:
        return status_for(self.kind)

    @property
    def public_text(self) -> str:
        return self.public_message or self.message

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            kind=self.kind.value,
            message=f"{self.message} ({self.cause})" if self.cause else self.message,
            actionable=get_actionable_guidance(self.kind),
            component=self.component,
            operation=self.operation,
        )


class InvalidRequestError(ApplicationError):
    kind = ErrorKind.INVALID_REQUEST
    title = "Invalid request"


class ContentTooLargeError(ApplicationError):
    kind = ErrorKind.CONTENT_TOO_LARGE
    title = "Content too large"


class ValidationFailedError(ApplicationError):
    kind = ErrorKind.VALIDATION_FAILED
    title = "Invalid AsciiDoc"


class ConversionTimeoutError(ApplicationError):
    kind = ErrorKind.CONVERSION_TIMEOUT
    title = "Conversion timeout"
    public_message = (
        "Conversion exceeded the maximum time limit. The document may be too large or complex. "
        "Try breaking it into smaller sections or increase ASCIIDOCTOR_CONVERSION_TIMEOUT."
    )


class ConversionFailedError(ApplicationError):
    kind = ErrorKind.CONVERSION_FAILED
    title = "Conversion failed"
    public_message = (
        "Document conversion failed. Check AsciiDoc syntax and ensure all required "
        "dependencies are installed."
    )


class FileOperationError(ApplicationError):
    kind = ErrorKind.FILE_OPERATION_ERROR
    title = "Conversion failed"
    public_message = "Document conversion failed while handling temporary files."


class EncodingError(ApplicationError):
    kind = ErrorKind.ENCODING_ERROR
    title = "Encoding error"


class InitializationError(ApplicationError):
    kind = ErrorKind.INITIALIZATION_ERROR
    title = "Initialization error"


def describe_error(
    error: BaseException,
    *,
    kind: Optional[ErrorKind] = None,
    component: Optional[str] = None,
    operation: Optional[str] = None,
) -> ErrorDetail:
    """Build the typed descriptor for any exception."""
    if isinstance(error, ApplicationError):
        detail = error.to_detail()
        if kind is None and component is None and operation is None:
            return detail
        effective_kind = ErrorKind(kind) if kind else error.kind
        return ErrorDetail(
            kind=effective_kind.value,
            message=detail.message,
            actionable=get_actionable_guidance(effective_kind),
            component=detail.component or component,
            operation=operation or detail.operation,
        )
    effective_kind = ErrorKind(kind) if kind else ErrorKind.UNEXPECTED_FAULT
    return ErrorDetail(
        kind=effective_kind.value,
        message=str(error) or type(error).__name__,
        actionable=get_actionable_guidance(effective_kind),
        component=component,
        operation=operation,
    )


def error_envelope(title: str, message: str, request_id: Optional[str]) -> Dict[str, Any]:
    """Stable JSON shape for every error response."""
    return {
        "error": title,
        "message": message,
        "request_id": request_id or "unknown",
        "timestamp": utc_timestamp(),
    }


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


async def application_error_handler(request: Request, exc: ApplicationError) -> JSONResponse:
    """Convert an ApplicationError into the JSON envelope and log it with its kind."""
    request_id = _request_id(request)
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"{exc.title}: {exc.message}",
        extra={
            "component": exc.component or "http",
            "error_detail": exc.to_detail(),
            "fields": {
                "method": request.method,
                "path": request.url.path,
                "status_code": exc.status_code,
                **exc.details,
            },
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.title, exc.public_text, request_id),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render routing errors (404, 405, ...) with the same envelope."""
    title = exc.detail if isinstance(exc.detail, str) else "HTTP error"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(title, f"{request.method} {request.url.path}: {title}", _request_id(request)),
        headers=getattr(exc, "headers", None),
    )


def setup_exception_handlers(app) -> None:
    """Register the error handlers on the application."""
    app.add_exception_handler(ApplicationError, application_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
