"""
API package initialization and router organization.
"""
from fastapi import APIRouter

from .convert import router as convert_router

# Main API router
api_router = APIRouter()
api_router.include_router(convert_router)

__all__ = ["api_router"]
