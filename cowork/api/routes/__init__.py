"""
API Routes package for Cowork.

Contains all FastAPI route handlers organized by domain.
"""
from .health import router as health_router
from .permissions import router as permissions_router
from .sessions import router as sessions_router

__all__ = [
    "health_router",
    "permissions_router",
    "sessions_router",
]
