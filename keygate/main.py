"""
KeyGate - Main Application Entry Point

Serves the key lifecycle API and owns the background expiry sweeper.
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from keygate.api import keys, status as status_api
from keygate.config import settings
from keygate.core import ExpirySweeper, KeyService
from keygate.storage import AuditLog, KeyStore, close_db, init_database

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)

    db = await init_database()
    logger.info("Database initialized at %s", settings.db_path)

    store = KeyStore(db, default_timeout=settings.store_timeout_seconds)
    audit_log = AuditLog(db, default_timeout=settings.store_timeout_seconds)

    app.state.key_service = KeyService(
        store,
        audit_log,
        entropy_bytes=settings.key_entropy_bytes,
        max_issue_attempts=settings.issue_max_attempts,
        service_actor_id=settings.service_actor_id,
        service_actor_name=settings.service_actor_name,
        list_max_limit=settings.list_max_limit,
    )

    sweeper = ExpirySweeper(store, interval_seconds=settings.sweep_interval_seconds)
    app.state.sweeper = sweeper

    if settings.sweep_enabled:
        sweeper.start()
    else:
        logger.info("Expiry sweeper: DISABLED")

    logger.info("KeyGate ready to accept connections")

    yield

    logger.info("Shutting down KeyGate...")
    await sweeper.stop()
    await close_db()
    logger.info("KeyGate shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Single-use, time-bounded access key service",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

app.include_router(keys.router, prefix="/api/v1/keys", tags=["Keys"])
app.include_router(status_api.router, prefix="/api/v1", tags=["Status"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    sweeper = getattr(app.state, "sweeper", None)
    return {
        "status": "healthy",
        "version": settings.app_version,
        "sweeper_running": bool(sweeper and sweeper.running),
    }


def run() -> None:
    uvicorn.run(
        "keygate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
