"""
Common response models.
"""
from typing import Dict, List
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error envelope returned by every failing endpoint."""
    error: str = Field(..., description="Short error title")
    message: str = Field(..., description="Error explanation")
    request_id: str = Field(..., description="Correlation id of the request")
    timestamp: str = Field(..., description="UTC timestamp (RFC 3339)")

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "Missing content",
                "message": "Request body must include non-empty 'content'",
                "request_id": "3f0c4d8e-5a3b-4c55-9b1e-2a7d8f0e9c11",
                "timestamp": "2024-01-01T12:00:00Z",
            }
        }
    }


class HealthResponse(BaseModel):
    """Health check response model."""
    name: str = Field(..., description="Service name")
    status: str = Field(..., description="'ok' or 'degraded'")
    endpoints: Dict[str, str] = Field(..., description="Conversion endpoints")
    renderer_ready: bool = Field(..., description="Whether asciidoctor was found")
    ebook_converter_ready: bool = Field(..., description="Whether ebook-convert was found")
    timestamp: str = Field(..., description="UTC timestamp (RFC 3339)")


class EndpointInfo(BaseModel):
    path: str
    method: str
    description: str
    content_type: str


class ApiCatalog(BaseModel):
    """Static catalog of the conversion routes."""
    name: str
    version: str
    endpoints: List[EndpointInfo]
