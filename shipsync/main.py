"""
shipsync
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from shipsync.config import get_settings
from shipsync.utils.logger import log
from shipsync import __version__

from shipsync.api import health, sync

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        from shipsync.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    yield

    log.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Fulfillment sync and billing attribution engine

    - Incremental and full order/shipment syncs per tenant
    - Tiered shipment timeline polling
    - Verified soft-delete reconciliation
    - Transaction attribution to tenants

    Syncs are triggered externally (cron or the /sync endpoints).
    """,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(sync.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "endpoints": {
            "health": "GET /health",
            "status": "GET /status",
            "sync_incremental": "POST /sync/incremental",
            "sync_full": "POST /sync/full",
            "sync_transactions": "POST /sync/transactions",
            "sync_progress": "GET /sync/progress",
            "sync_checkpoints": "GET /sync/checkpoints",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "shipsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development"
    )
