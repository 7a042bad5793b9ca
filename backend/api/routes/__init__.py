"""API Routes."""

from fastapi import APIRouter

from .checkout import router as checkout_router
from .health import router as health_router
from .membership import router as membership_router
from .webhook import router as webhook_router

# Create main API router
api_router = APIRouter()

# Include route modules
api_router.include_router(health_router)
api_router.include_router(webhook_router)
api_router.include_router(checkout_router)
api_router.include_router(membership_router)
