"""API routes for SafeTalk."""

from fastapi import APIRouter

from .internal import router as internal_router
from .issues import router as issues_router
from .notifications import router as notifications_router
from .partners import router as partners_router
from .user import router as user_router

# Main API router
api_router = APIRouter()

# User routes (/me/*)
api_router.include_router(user_router)

# Workflow
api_router.include_router(partners_router)
api_router.include_router(issues_router)
api_router.include_router(notifications_router)

# Service-level routes
api_router.include_router(internal_router)

__all__ = ["api_router"]
