"""Health and readiness endpoints."""

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from riskengine.config import settings
from riskengine.db.database import check_db

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from riskengine.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


async def check_redis() -> bool:
    client = aioredis.from_url(settings.redis_url)
    try:
        await client.ping()
        return True
    except (RedisError, OSError) as exc:
        logger.warning("redis_not_ready", error=str(exc))
        return False
    finally:
        await client.aclose()


@router.get("/ready")
async def ready() -> JSONResponse:
    if settings.store_backend == "sql":
        db_ok = await check_db()
    else:
        db_ok = True
    redis_ok = await check_redis()

    all_ready = db_ok and redis_ok
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "store_backend": settings.store_backend,
            "database": db_ok,
            "redis": redis_ok,
        },
    )
