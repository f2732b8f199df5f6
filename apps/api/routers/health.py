"""Liveness, readiness and dependency probes."""

import logging
from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import engine

logger = logging.getLogger(__name__)

router = APIRouter()

REQUIRED_PANEL_SETTINGS = ("PTERODACTYL_URL", "PTERODACTYL_API_KEY")


def _missing_panel_settings() -> List[str]:
    return [name for name in REQUIRED_PANEL_SETTINGS if not getattr(settings, name)]


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database probe failed: %s", exc, extra={"error": str(exc)})
        return f"down: {exc}"
    return "up"


async def _redis_status() -> str:
    timeout = settings.REDIS_HEALTH_TIMEOUT_SECONDS
    client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=timeout, socket_timeout=timeout)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        return f"down: {exc}"
    finally:
        await client.aclose()
    return "up"


@router.get("/health")
async def health_check():
    """
    Dependency health.

    The ledger lives in the database, so a database outage is unhealthy.
    Redis only backs rate limiting, which falls back to local counters, so
    its outage is reported as degraded.
    """
    database = await _database_status()
    cache = await _redis_status()
    missing = _missing_panel_settings()

    if database != "up":
        status = "unhealthy"
    elif cache != "up" or missing:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "api": "up",
        "database": database,
        "redis": cache,
        "panel": "configured" if not missing else "missing",
        "panel_client_key": "dedicated" if settings.PTERODACTYL_CLIENT_API_KEY else "shared",
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once the panel can be addressed; deploys and power actions need it."""
    missing = _missing_panel_settings()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
