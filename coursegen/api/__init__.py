"""API routes."""

from .jobs import router as jobs_router
from .admin import router as admin_router

__all__ = ["jobs_router", "admin_router"]
