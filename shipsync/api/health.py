"""
Health check and status endpoints
"""
from fastapi import APIRouter

from shipsync.config import get_settings
from shipsync.utils.helpers import utcnow
from shipsync import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "upstream": {
            "base_url": settings.shipbob_api_base_url,
            "parent_token_configured": bool(settings.shipbob_parent_api_token),
        },
        "timeline": {
            "capacity": settings.timeline_capacity,
            "fresh_days": settings.timeline_fresh_days,
            "older_days": settings.timeline_older_days,
        },
        "timestamp": utcnow().isoformat()
    }
