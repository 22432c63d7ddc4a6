"""
dealboard
Main FastAPI application
"""
from fastapi import FastAPI
from contextlib import asynccontextmanager

from dealboard.config import ConfigurationError, get_settings, validate_hubspot_settings
from dealboard.utils.logger import log
from dealboard import __version__

# Import routers
from dealboard.api import health, sync, contests, owner_mappings, performance

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        validate_hubspot_settings(settings)
    except ConfigurationError as e:
        log.error(f"HubSpot configuration error, sync runs will fail until fixed: {e}")

    # Initialize database
    try:
        from dealboard.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the scheduler for the hourly deal sync
    if settings.scheduler_enabled:
        try:
            from dealboard.scheduler import start_scheduler
            start_scheduler()
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if settings.scheduler_enabled:
        from dealboard.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Sales leaderboards from HubSpot deals

    - Mirrors fulfilled HubSpot deals (hourly incremental sync)
    - Contest leaderboards per salesperson
    - Monthly deal, amount and provision rollups
    """,
    lifespan=lifespan
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(sync.router)
app.include_router(contests.router)
app.include_router(owner_mappings.router)
app.include_router(performance.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "dealboard.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
