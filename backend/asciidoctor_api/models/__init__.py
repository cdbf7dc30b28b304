"""Data models."""

# Conversion models
from .conversion import (
    ConversionRequest,
    ConversionResult,
    DocumentMetadata,
    OutputFormat,
    DEFAULT_TITLE,
    DEFAULT_VERSION,
)

# Common models
from .common import (
    ApiCatalog,
    EndpointInfo,
    ErrorResponse,
    HealthResponse,
)

__all__ = [
    "ConversionRequest",
    "ConversionResult",
    "DocumentMetadata",
    "OutputFormat",
    "DEFAULT_TITLE",
    "DEFAULT_VERSION",
    "ApiCatalog",
    "EndpointInfo",
    "ErrorResponse",
    "HealthResponse",
]
