"""
Middleware chain for the FastAPI application.

Outermost first: fault containment, request logging, CORS, text compression.
"""
import gzip
import io
import re
import time
import logging
import traceback
from typing import Callable, Dict, List, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from asciidoctor_api.core.config import Settings
from asciidoctor_api.core.error_handling import ErrorDetail, ErrorKind, error_envelope, get_actionable_guidance
from asciidoctor_api.core.logging_config import (
    clear_request_context,
    generate_request_id,
    set_request_context,
)

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPES = (
    "text/",
    "application/json",
    "application/javascript",
    "application/xml",
    "application/xhtml+xml",
)


class FaultContainmentMiddleware(BaseHTTPMiddleware):
    """Assign the correlation id and turn any escaped exception into a 500 envelope."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or generate_request_id()
        request.state.request_id = request_id
        set_request_context(request_id)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Unexpected fault while handling {request.method} {request.url.path}",
                extra={
                    "component": "http",
                    "error_detail": ErrorDetail(
                        kind=ErrorKind.UNEXPECTED_FAULT.value,
                        message=str(e) or type(e).__name__,
                        actionable=get_actionable_guidance(ErrorKind.UNEXPECTED_FAULT),
                        component="http",
                        operation=f"{request.method} {request.url.path}",
                        stack="".join(traceback.format_exception(type(e), e, e.__traceback__)),
                    ),
                    "fields": {"method": request.method, "path": request.url.path},
                },
            )
            response = JSONResponse(
                status_code=500,
                content=error_envelope(
                    "Internal server error",
                    "An unexpected error occurred. The error has been logged.",
                    request_id,
                ),
            )
        finally:
            clear_request_context()

        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request and its response with timing."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        request_id = getattr(request.state, "request_id", "unknown")
        client_ip = request.client.host if request.client else "unknown"

        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={
                "component": "http",
                "fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "remote_addr": client_ip,
                    "user_agent": request.headers.get("user-agent", ""),
                    "content_length": request.headers.get("content-length", "0"),
                },
            },
        )

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        if response.status_code >= 500:
            log_level = logging.ERROR
        elif response.status_code >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            f"Response: {response.status_code} for {request.method} {request.url.path}",
            extra={
                "component": "http",
                "fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(process_time * 1000, 2),
                },
            },
        )

        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        if not response.headers.get("X-Request-ID"):
            response.headers["X-Request-ID"] = request_id
        return response


def is_text_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    content_type = content_type.split(";", 1)[0].strip().lower()
    return content_type.startswith(TEXT_CONTENT_TYPES) or content_type.endswith("+json")


class TextCompressionMiddleware:
    """Gzip text-like responses when the client accepts gzip.

    Binary artifacts (EPUB, PDF, Kindle formats) pass through untouched.
    """

    def __init__(self, app: ASGIApp, minimum_size: int = 500, compresslevel: int = 6) -> None:
        self.app = app
        self.minimum_size = minimum_size
        self.compresslevel = compresslevel

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        if "gzip" not in headers.get("accept-encoding", ""):
            await self.app(scope, receive, send)
            return

        responder = _TextGzipResponder(self.app, self.minimum_size, self.compresslevel)
        await responder(scope, receive, send)


async def _unattached_send(message: Message) -> None:
    raise RuntimeError("send awaitable not set")


class _TextGzipResponder:
    def __init__(self, app: ASGIApp, minimum_size: int, compresslevel: int) -> None:
        self.app = app
        self.minimum_size = minimum_size
        self.send: Send = _unattached_send
        self.initial_message: Message = {}
        self.started = False
        self.passthrough = False
        self.gzip_buffer = io.BytesIO()
        self.gzip_file = gzip.GzipFile(mode="wb", fileobj=self.gzip_buffer, compresslevel=compresslevel)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.send = send
        try:
            await self.app(scope, receive, self.send_with_gzip)
        finally:
            self.gzip_file.close()

    def _compress(self, body: bytes, finish: bool) -> bytes:
        self.gzip_file.write(body)
        if finish:
            self.gzip_file.close()
        else:
            self.gzip_file.flush()
        data = self.gzip_buffer.getvalue()
        self.gzip_buffer.seek(0)
        self.gzip_buffer.truncate()
        return data

    async def send_with_gzip(self, message: Message) -> None:
        message_type = message["type"]

        if message_type == "http.response.start":
            headers = Headers(raw=message["headers"])
            self.passthrough = (
                not is_text_content_type(headers.get("content-type"))
                or "content-encoding" in headers
            )
            if self.passthrough:
                await self.send(message)
            else:
                # Hold the start message until the first body chunk is known
                self.initial_message = message
            return

        if message_type != "http.response.body" or self.passthrough:
            await self.send(message)
            return

        body = message.get("body", b"")
        more_body = message.get("more_body", False)

        if not self.started:
            self.started = True
            headers = MutableHeaders(raw=self.initial_message["headers"])
            if not more_body and len(body) < self.minimum_size:
                await self.send(self.initial_message)
                await self.send(message)
                return

            headers["Content-Encoding"] = "gzip"
            headers.add_vary_header("Accept-Encoding")
            if more_body:
                del headers["Content-Length"]
                message["body"] = self._compress(body, finish=False)
            else:
                message["body"] = self._compress(body, finish=True)
                headers["Content-Length"] = str(len(message["body"]))
            await self.send(self.initial_message)
            await self.send(message)
            return

        message["body"] = self._compress(body, finish=not more_body)
        await self.send(message)


def cors_options(allow_origin: str) -> Dict[str, object]:
    """
    Translate the configured origin pattern into CORSMiddleware options.

    ``*`` allows any origin. Otherwise the value is a comma-separated list of
    origins; entries containing ``*`` (for example ``https://*.example.com``)
    become part of ``allow_origin_regex``.
    """
    origins: List[str] = []
    patterns: List[str] = []
    for entry in (part.strip() for part in allow_origin.split(",")):
        if not entry:
            continue
        if entry == "*":
            return {"allow_origins": ["*"]}
        if "*" in entry:
            patterns.append(re.escape(entry).replace(r"\*", r"[^/]+"))
        else:
            origins.append(entry.rstrip("/"))

    if not origins and not patterns:
        return {"allow_origins": ["*"]}

    options: Dict[str, object] = {"allow_origins": origins}
    if patterns:
        options["allow_origin_regex"] = "|".join(f"(?:{p})" for p in patterns)
    return options


def setup_middleware(app, settings: Settings) -> None:
    """Set up all middleware for the application."""
    # Add middleware in reverse order (last added is executed first)

    # Compression (innermost)
    app.add_middleware(TextCompressionMiddleware)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Origin", "Accept"],
        expose_headers=["Content-Disposition", "X-Request-ID"],
        max_age=86400,
        **cors_options(settings.allow_origin),
    )

    # Request/response logging
    app.add_middleware(RequestLoggingMiddleware)

    # Fault containment (outermost)
    app.add_middleware(FaultContainmentMiddleware)

    logger.info(
        "Middleware setup completed",
        extra={"component": "http", "fields": {"allow_origin": settings.allow_origin}},
    )
