"""
FastAPI dependencies.
"""
from fastapi import Request

from asciidoctor_api.core.config import Settings
from asciidoctor_api.services.conversion_service import ConversionService


def get_conversion_service(request: Request) -> ConversionService:
    """Conversion service attached to the application at startup."""
    return request.app.state.conversion_service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
