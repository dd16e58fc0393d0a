"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings, validate_billing_settings
from database import engine

router = APIRouter()
logger = logging.getLogger(__name__)


async def _check_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as exc:
        logger.warning("Database health check failed: %s", exc)
        return f"down: {type(exc).__name__}"


async def _check_redis() -> str:
    client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=0.5)
    try:
        await client.ping()
        return "up"
    except (redis.RedisError, OSError) as exc:
        return f"down: {type(exc).__name__}"
    finally:
        await client.aclose()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    The database is required; Redis only backs rate limiting, which falls back
    to in-process counters.
    """
    database = await _check_database()
    cache = await _check_redis()
    return {
        "status": "healthy" if database == "up" and cache == "up" else "degraded",
        "api": "up",
        "database": database,
        "redis": cache,
        "billing": "enabled" if settings.BILLING_ENABLED else "disabled",
        "image_generation": "configured" if settings.GEMINI_API_KEY else "missing",
    }


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.GEMINI_API_KEY:
        missing.append("GEMINI_API_KEY")
    missing.extend(validate_billing_settings())
    if await _check_database() != "up":
        missing.append("database")

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
