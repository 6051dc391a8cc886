"""
Health Check Routes
Endpoints for monitoring application health
"""
from fastapi import APIRouter
from nphies_poll.models.poll_dto import HealthResponse
from nphies_poll.config import settings
from nphies_poll.services.db import health_check as db_health_check

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint for monitoring.
    Returns status and version information including database health.

    NOTE: Unauthenticated so load balancers can probe it. No tenant data is returned.
    """
    db_health = db_health_check()

    overall_status = "ok"
    if db_health.get("status") != "healthy":
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version="1.0.0",
        details={
            "environment": settings.env,
            "nphies_base_url": settings.nphies_base_url,
            "database": db_health,
        },
    )
