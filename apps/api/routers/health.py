"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings

router = APIRouter()


def _missing_provider_settings() -> list:
    missing = []
    if not settings.GENERATION_PROVIDER_API_KEY:
        missing.append("GENERATION_PROVIDER_API_KEY")
    if not settings.PAYMENT_PROVIDER_API_KEY:
        missing.append("PAYMENT_PROVIDER_API_KEY")
    return missing


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "generation_provider": "configured" if settings.GENERATION_PROVIDER_API_KEY else "missing",
        "payment_provider": "configured" if settings.PAYMENT_PROVIDER_API_KEY else "missing",
        "recovery_enabled": bool(settings.RECOVERY_ENABLED),
    }

    # Check database connection
    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Check Redis connection (poll queue)
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness check."""
    missing = _missing_provider_settings()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
