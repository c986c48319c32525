"""
Health check and monitoring endpoints for production readiness.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict

import redis.asyncio as redis
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from movie_api_server.config import settings
from movie_api_server.logging_config import get_logger
from movie_api_server.store import DurableStore, StoreError

router = APIRouter(prefix="/api/v1", tags=["health"])


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def check_database(store: DurableStore) -> Dict[str, Any]:
    """Check durable store connectivity"""
    try:
        start = time.time()
        await store.ping()
        duration_ms = (time.time() - start) * 1000
        return {
            "status": "healthy",
            "response_time_ms": round(duration_ms, 2),
        }
    except StoreError as e:
        logger = get_logger("health")
        logger.error("database_health_check_failed", error=str(e))
        return {
            "status": "unhealthy",
            "error": str(e),
        }


async def check_redis() -> Dict[str, Any]:
    """Check Redis connectivity when it backs login throttling"""
    if not settings.rate_limit_storage_uri.startswith(("redis://", "rediss://")):
        return {
            "status": "disabled",
            "message": "Login throttling does not use Redis"
        }

    client = None
    try:
        start = time.time()
        client = redis.from_url(
            settings.rate_limit_storage_uri,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
        )
        await client.ping()
        duration_ms = (time.time() - start) * 1000
        return {
            "status": "healthy",
            "response_time_ms": round(duration_ms, 2),
        }
    except (redis.RedisError, OSError) as e:
        logger = get_logger("health")
        logger.error("redis_health_check_failed", error=str(e))
        return {
            "status": "unhealthy",
            "error": str(e),
        }
    finally:
        if client is not None:
            await client.aclose()


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if service is running.
    """
    return {
        "status": "healthy",
        "timestamp": _utcnow_iso(),
        "service": settings.app_name,
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness check endpoint.
    Checks the database and, when configured, Redis.
    Returns 200 only if all dependencies are healthy.
    """
    logger = get_logger("health")

    db_check, redis_check = await asyncio.gather(
        check_database(request.app.state.store),
        check_redis(),
    )
    checks = {"database": db_check, "redis": redis_check}

    is_ready = all(
        check.get("status") in ["healthy", "disabled"]
        for check in checks.values()
    )

    response = {
        "ready": is_ready,
        "timestamp": _utcnow_iso(),
        "checks": checks,
    }

    if not is_ready:
        logger.warning("readiness_check_failed", checks=checks)

    return JSONResponse(content=response, status_code=200 if is_ready else 503)


@router.get("/version")
async def get_version():
    """
    Get application version and configuration info.
    """
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "timestamp": _utcnow_iso(),
        "environment": settings.environment,
        "features": {
            "signed_requests": True,
            "per_key_daily_limits": settings.honor_key_daily_limit,
            "login_throttling": settings.rate_limit_enabled,
        },
    }


__all__ = ["router"]
