"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database and Redis reachability.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {type(e).__name__}"
        health_status["status"] = "degraded"

    # Redis only backs rate limiting, so it never makes the service unhealthy.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {type(e).__name__}"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Ready once a session signing secret is configured."""
    missing = []
    if not (settings.JWT_SECRET or "").strip():
        missing.append("JWT_SECRET")
    registry = getattr(request.app.state, "provider_registry", None)

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True, "social_providers": sorted(registry or {})}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
