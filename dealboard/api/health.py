"""
Health check and status endpoints
"""
from fastapi import APIRouter
from dealboard.config import get_settings
from dealboard.connectors.hubspot_connector import HubSpotConnector
from dealboard.utils.helpers import utc_now
from dealboard import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utc_now().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "integrations": {
            "hubspot": {
                "enabled": settings.hubspot_enabled,
                "identity_strategy": settings.identity_strategy,
                "schedule": settings.deal_sync_schedule,
            }
        },
        "timestamp": utc_now().isoformat()
    }


@router.get("/status/hubspot")
async def get_hubspot_status():
    """Check the configured token against the HubSpot owners endpoint"""
    if not settings.hubspot_enabled:
        return {"enabled": False, "connected": False}

    connector = HubSpotConnector(settings)
    connected = await connector.connect() and await connector.validate_connection()
    return {"enabled": True, "connected": connected, "connector": connector.get_status()}
