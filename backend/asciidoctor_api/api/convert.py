"""
Conversion API endpoints.

Every endpoint accepts the same JSON payload and streams the produced artifact
as an attachment. The per-request working directory is removed once the body
has been sent, or immediately when the conversion fails.
"""
import logging
import re
import time
from typing import Callable
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.types import Receive, Scope, Send

from asciidoctor_api.core.config import Settings
from asciidoctor_api.core.dependencies import get_app_settings, get_conversion_service
from asciidoctor_api.core.error_handling import (
    ContentTooLargeError,
    FileOperationError,
    InvalidRequestError,
)
from asciidoctor_api.models import DEFAULT_TITLE, ConversionRequest, ErrorResponse, OutputFormat
from asciidoctor_api.services.conversion_service import ConversionService
from asciidoctor_api.services.document_header import validate_and_fix

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/convert", tags=["Conversion"])

_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|\x00-\x1f\x7f]')

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid JSON, missing content or invalid AsciiDoc"},
    413: {"model": ErrorResponse, "description": "Content too large"},
    500: {"model": ErrorResponse, "description": "Conversion failed"},
    504: {"model": ErrorResponse, "description": "Conversion timeout"},
}


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in file names with ``_``."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name)


def content_disposition(title: str, extension: str) -> str:
    """
    ``attachment`` disposition for ``<title>.<ext>``.

    Non-ASCII titles get an ASCII fallback ``filename`` plus an RFC 5987
    ``filename*`` parameter.
    """
    filename = f"{sanitize_filename(title)}.{extension}"
    ascii_name = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
    if ascii_name == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{ascii_name}\"; filename*=utf-8''{quote(filename)}"


class WorkspaceFileResponse(FileResponse):
    """File response that releases its working directory after sending, even on failure."""

    def __init__(self, *args, on_close: Callable[[], None], **kwargs):
        super().__init__(*args, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await run_in_threadpool(self.on_close)


async def handle_convert(
    request: Request,
    output_format: OutputFormat,
    service: ConversionService,
    settings: Settings,
) -> WorkspaceFileResponse:
    """Shared request flow of every conversion endpoint."""
    start_time = time.perf_counter()
    fmt = output_format.value

    body = await request.body()
    try:
        payload = ConversionRequest.model_validate_json(body)
    except ValidationError as e:
        raise InvalidRequestError(
            f"Failed to parse {fmt} conversion request: {e.error_count()} error(s)",
            title="Invalid JSON",
            public_message="Request body must be valid JSON with 'content' and 'title' fields",
            component="http_handler",
            operation="parse_request",
            details={"format": fmt},
        ) from e

    if not payload.content:
        raise InvalidRequestError(
            "The 'content' field is required and cannot be empty",
            title="Missing content",
            component="http_handler",
            operation="validate_request",
            details={"format": fmt},
        )

    content_size = len(payload.content.encode("utf-8"))
    metadata = payload.metadata()
    logger.info(
        f"Received {fmt} conversion request",
        extra={
            "component": "converter",
            "fields": {
                "format": fmt,
                "title": metadata.title,
                "authors": len(metadata.authors),
                "content_size": content_size,
            },
        },
    )

    if content_size > settings.max_content_size:
        raise ContentTooLargeError(
            f"Content size ({content_size} bytes) exceeds maximum allowed size "
            f"({settings.max_content_size} bytes)",
            component="http_handler",
            operation="validate_request",
            details={"format": fmt, "content_size": content_size},
        )

    content = validate_and_fix(payload.content, metadata)

    result = await service.convert(content, metadata, output_format)

    if not result.path.is_file():
        await run_in_threadpool(service.cleanup, result.work_dir)
        raise FileOperationError(
            f"output file disappeared before streaming: {result.path}",
            title="Failed to read output",
            public_message="Conversion succeeded but failed to read the output file.",
            component="http_handler",
            operation="read_output",
            details={"format": fmt},
        )

    def release() -> None:
        service.cleanup(result.work_dir)
        logger.info(
            f"{fmt} conversion completed successfully",
            extra={
                "component": "converter",
                "fields": {
                    "format": fmt,
                    "output_size": result.size,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000),
                },
            },
        )

    return WorkspaceFileResponse(
        result.path,
        media_type=result.media_type,
        headers={"Content-Disposition": content_disposition(metadata.title or DEFAULT_TITLE, output_format.extension)},
        on_close=release,
    )


@router.post("/epub", responses=ERROR_RESPONSES, response_class=FileResponse)
async def convert_epub(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
    settings: Settings = Depends(get_app_settings),
):
    """Convert AsciiDoc to EPUB 3."""
    return await handle_convert(request, OutputFormat.EPUB, service, settings)


@router.post("/pdf", responses=ERROR_RESPONSES, response_class=FileResponse)
async def convert_pdf(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
    settings: Settings = Depends(get_app_settings),
):
    """Convert AsciiDoc to PDF; ``theme`` selects an asciidoctor-pdf theme."""
    return await handle_convert(request, OutputFormat.PDF, service, settings)


@router.post("/html5", responses=ERROR_RESPONSES, response_class=FileResponse)
async def convert_html5(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
    settings: Settings = Depends(get_app_settings),
):
    """Convert AsciiDoc to a single self-contained HTML5 page with embedded images."""
    return await handle_convert(request, OutputFormat.HTML5, service, settings)


@router.post("/mobi", responses=ERROR_RESPONSES, response_class=FileResponse)
async def convert_mobi(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
    settings: Settings = Depends(get_app_settings),
):
    """Convert AsciiDoc to MOBI via an intermediate EPUB."""
    return await handle_convert(request, OutputFormat.MOBI, service, settings)


@router.post("/azw3", responses=ERROR_RESPONSES, response_class=FileResponse)
async def convert_azw3(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
    settings: Settings = Depends(get_app_settings),
):
    """Convert AsciiDoc to AZW3 via an intermediate EPUB."""
    return await handle_convert(request, OutputFormat.AZW3, service, settings)


@router.post("/docbook5", responses=ERROR_RESPONSES, response_class=FileResponse)
async def convert_docbook5(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
    settings: Settings = Depends(get_app_settings),
):
    """Convert AsciiDoc to DocBook 5 XML."""
    return await handle_convert(request, OutputFormat.DOCBOOK5, service, settings)
