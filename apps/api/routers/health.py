"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Reports the document store, the Redis change feed and live listener count.
    """
    runtime = getattr(request.app.state, "runtime", None)
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "change_feed": "disabled",
        "listeners": runtime.store.listener_count() if runtime is not None else 0,
        "openai": "configured" if settings.OPENAI_API_KEY else "fallback",
    }

    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    if settings.DOCUMENT_CHANGE_FEED_ENABLED:
        try:
            r = redis.from_url(settings.REDIS_URL)
            await r.ping()
            await r.aclose()
            health_status["change_feed"] = "up"
        except Exception as e:
            health_status["change_feed"] = f"down: {str(e)}"
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Kubernetes-style readiness probe."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or not runtime.started:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": ["runtime"]},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
