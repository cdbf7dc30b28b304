"""
Main FastAPI application.
"""
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from asciidoctor_api import __version__
from asciidoctor_api.api import api_router
from asciidoctor_api.core.config import Settings, get_settings
from asciidoctor_api.core.error_handling import ErrorKind, setup_exception_handlers, utc_timestamp
from asciidoctor_api.core.logging_config import get_logger, setup_logging
from asciidoctor_api.core.middleware import setup_middleware
from asciidoctor_api.models import ApiCatalog, EndpointInfo, HealthResponse, OutputFormat
from asciidoctor_api.services.conversion_service import ConversionService
from asciidoctor_api.services.renderer import discover_ebook_converter, discover_renderer

SERVICE_NAME = "asciidoctor-api"

logger = get_logger("server")

_FORMAT_DESCRIPTIONS = {
    OutputFormat.EPUB: "Convert AsciiDoc content to EPUB",
    OutputFormat.PDF: "Convert AsciiDoc content to PDF",
    OutputFormat.HTML5: "Convert AsciiDoc content to HTML5 with embedded images",
    OutputFormat.MOBI: "Convert AsciiDoc content to MOBI (Kindle format, via EPUB)",
    OutputFormat.AZW3: "Convert AsciiDoc content to AZW3 (Kindle Format 8, via EPUB)",
    OutputFormat.DOCBOOK5: "Convert AsciiDoc content to DocBook 5 XML",
}


def conversion_endpoints() -> dict:
    return {fmt.value: f"/convert/{fmt.value}" for fmt in OutputFormat}


def build_conversion_service(settings: Settings) -> ConversionService:
    """Discover the external tools and build the service; never fails on a missing renderer."""
    renderer = discover_renderer(settings)
    ebook_converter = discover_ebook_converter(settings)
    return ConversionService(settings, renderer, ebook_converter)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings: Settings = app.state.settings
    setup_logging(settings)
    if app.state.conversion_service is None:
        app.state.conversion_service = await run_in_threadpool(build_conversion_service, settings)

    service: ConversionService = app.state.conversion_service
    logger.info(
        "Server starting",
        {
            "address": settings.bind_address,
            "renderer_ready": service.is_ready,
            "ebook_converter_ready": service.ebook_converter_ready,
            "allow_origin": settings.allow_origin,
            "conversion_timeout": settings.conversion_timeout,
        },
    )

    yield

    # Shutdown
    logger.info("Shutting down server", {"timeout": settings.shutdown_timeout})
    try:
        await run_in_threadpool(service.shutdown)
    except Exception as e:
        logger.error("Error during server shutdown", e, kind=ErrorKind.SHUTDOWN_ERROR, operation="shutdown")
    else:
        logger.info("Server exited")


def create_app(
    settings: Optional[Settings] = None,
    conversion_service: Optional[ConversionService] = None,
) -> FastAPI:
    """Build the application. A supplied service skips renderer discovery."""
    settings = settings or get_settings()

    app = FastAPI(
        title="AsciiDoctor API",
        description="REST API for converting AsciiDoc content to EPUB, PDF, HTML5, MOBI, AZW3 and DocBook 5",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.conversion_service = conversion_service

    setup_exception_handlers(app)
    setup_middleware(app, settings)
    app.include_router(api_router)

    @app.get("/", tags=["Service"])
    async def root():
        """Service banner."""
        return {
            "name": SERVICE_NAME,
            "status": "ok",
            "version": __version__,
            "message": "Visit /api for REST API documentation",
            "endpoints": {**conversion_endpoints(), "health": "/healthz", "api_docs": "/api"},
        }

    @app.get("/healthz", tags=["Service"], response_model=HealthResponse)
    async def health_check(request: Request):
        """Readiness of the renderer; 503 while degraded."""
        service: Optional[ConversionService] = request.app.state.conversion_service
        renderer_ready = service is not None and service.is_ready
        health = HealthResponse(
            name=SERVICE_NAME,
            status="ok" if renderer_ready else "degraded",
            endpoints=conversion_endpoints(),
            renderer_ready=renderer_ready,
            ebook_converter_ready=service is not None and service.ebook_converter_ready,
            timestamp=utc_timestamp(),
        )
        return JSONResponse(status_code=200 if renderer_ready else 503, content=health.model_dump())

    @app.get("/api", tags=["Service"], response_model=ApiCatalog)
    async def api_catalog():
        """Static catalog of the conversion routes."""
        endpoints = [
            EndpointInfo(
                path="/healthz",
                method="GET",
                description="Health check endpoint",
                content_type="application/json",
            )
        ]
        endpoints.extend(
            EndpointInfo(
                path=f"/convert/{fmt.value}",
                method="POST",
                description=_FORMAT_DESCRIPTIONS[fmt],
                content_type=fmt.media_type,
            )
            for fmt in OutputFormat
        )
        return ApiCatalog(name=SERVICE_NAME, version=__version__, endpoints=endpoints)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve on ``ASCIIDOCTOR_HOST:ASCIIDOCTOR_PORT``."""
    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
        timeout_graceful_shutdown=settings.shutdown_timeout,
    )


if __name__ == "__main__":
    run()
