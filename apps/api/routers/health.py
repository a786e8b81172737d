"""
Health probes for the caption service and its backing stores.
"""

import logging
from typing import Dict, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import engine
from services.orchestrator import get_orchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


async def _probe_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database probe failed: %s", exc)
        return "down"
    return "up"


async def _probe_redis() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.info("Redis probe failed, rate limits fall back to in-process counters: %s", exc)
        return "down"
    finally:
        await client.aclose()
    return "up"


def _missing_provider_settings() -> List[str]:
    missing = []
    if not settings.OPENAI_API_KEY:
        missing.append("OPENAI_API_KEY")
    if settings.BILLING_ENABLED:
        for name in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"):
            if not getattr(settings, name):
                missing.append(name)
    return missing


@router.get("/health")
async def health_check():
    """Overall status; Redis being down degrades nothing but shared rate limits."""
    components: Dict[str, str] = {
        "database": await _probe_database(),
        "redis": await _probe_redis(),
        "generation_provider": "configured" if settings.OPENAI_API_KEY else "missing",
        "billing": "disabled" if not settings.BILLING_ENABLED else (
            "configured" if settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET else "missing"
        ),
    }
    status = "healthy" if components["database"] == "up" else "degraded"
    return {
        "status": status,
        "components": components,
        "active_sessions": get_orchestrator().session_count(),
    }


@router.get("/health/ready")
async def readiness_check():
    missing = _missing_provider_settings()
    database = await _probe_database()
    if missing or database != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, "database": database},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
