"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.credit_context import credit_contexts

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Redis only backs rate limiting, so losing it degrades but does not stop charging.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "ledger_database": "unknown",
        "redis": "unknown",
        "active_credit_sessions": len(credit_contexts),
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["ledger_database"] = "up"
    except Exception as e:
        health_status["ledger_database"] = f"down: {str(e)}"
        health_status["status"] = "unhealthy"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.IDENTITY_SYNC_KEY:
        missing.append("IDENTITY_SYNC_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
