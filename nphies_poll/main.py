"""
NPHIES System Poll Service - FastAPI Application
Main entry point for the application
"""
import sys
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from nphies_poll.config import settings
from nphies_poll.routes import health_router, system_poll_router
from nphies_poll.services.db import test_connection, close_all_connections


# Configure logging
# Explicitly write to stdout so container log collectors capture it
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ],
    force=True
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Schema creation and migrations are handled externally
    logger.info(f"Starting NPHIES System Poll Service on port {settings.port}")
    logger.info(f"Environment: {settings.env}")
    logger.info(f"NPHIES endpoint: {settings.nphies_base_url}")

    logger.info("Testing database connection...")
    if test_connection():
        logger.info("Database connection OK")
    else:
        logger.error("Database connection test failed - polls will fail until it recovers")

    yield

    logger.info("Application shutting down")
    close_all_connections()


app = FastAPI(
    title="NPHIES System Poll Service",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(system_poll_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("nphies_poll.main:app", host=settings.host, port=settings.port)
