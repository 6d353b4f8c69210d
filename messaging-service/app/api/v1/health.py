"""
Health Check Endpoints

Provides health monitoring:
- Basic liveness check
- Readiness check (database, redis)
- Detailed component status including presence and circuit breakers
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional
from fastapi import APIRouter, Request, status, Response
from pydantic import BaseModel
import asyncio

from sqlalchemy import text

from app.core.circuit_breaker import get_all_circuit_breaker_stats

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health status response"""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    version: str = "1.0.0"
    uptime_seconds: Optional[float] = None


class DetailedHealthStatus(BaseModel):
    """Detailed health status with component checks"""
    status: str
    timestamp: str
    version: str = "1.0.0"
    components: Dict[str, Dict[str, Any]]
    uptime_seconds: Optional[float] = None


# Track service start time
SERVICE_START_TIME = datetime.utcnow()


def get_uptime() -> float:
    """Get service uptime in seconds"""
    return (datetime.utcnow() - SERVICE_START_TIME).total_seconds()


async def check_database(request: Request) -> Dict[str, Any]:
    """Check database connectivity and health"""
    session_factory = request.app.state.session_factory
    if session_factory is None:
        return {"status": "unhealthy", "message": "DATABASE_URL not configured"}

    try:
        async with session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.fetchone()

            return {
                "status": "healthy",
                "message": "Database connection successful",
            }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "message": f"Database connection failed: {str(e)}",
            "error": type(e).__name__
        }


async def check_redis(request: Request) -> Dict[str, Any]:
    """
    Check Redis connectivity and health.

    Redis only backs receipt checks and task-update publishing, so a
    service running without it is degraded, not down.
    """
    redis_client = request.app.state.redis
    if redis_client is None:
        return {"status": "degraded", "message": "REDIS_URL not configured"}

    try:
        await redis_client.client.ping()
        return {
            "status": "healthy",
            "message": "Redis connection successful",
            "circuit_state": redis_client.circuit_state.value,
        }
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return {
            "status": "degraded",
            "message": f"Redis connection failed: {str(e)}",
            "error": type(e).__name__
        }


def check_presence(request: Request) -> Dict[str, Any]:
    presence = request.app.state.presence
    return {
        "status": "healthy",
        "online_users": len(presence.online_users()),
        "connections": presence.connection_count(),
    }


@router.get("/health", response_model=HealthStatus, tags=["Health"])
async def health_check():
    """
    Basic health check endpoint (liveness probe).

    Returns 200 if service is running.
    """
    return HealthStatus(
        status="healthy",
        timestamp=datetime.utcnow().isoformat(),
        uptime_seconds=get_uptime()
    )


@router.get("/health/ready", response_model=HealthStatus, tags=["Health"])
async def readiness_check(request: Request, response: Response):
    """
    Readiness check endpoint.

    Returns 200 while the database is reachable, 503 otherwise.
    """
    db_health = await check_database(request)

    if db_health["status"] == "healthy":
        return HealthStatus(
            status="healthy",
            timestamp=datetime.utcnow().isoformat(),
            uptime_seconds=get_uptime()
        )
    else:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthStatus(
            status="unhealthy",
            timestamp=datetime.utcnow().isoformat(),
            uptime_seconds=get_uptime()
        )


@router.get("/health/detailed", response_model=DetailedHealthStatus, tags=["Health"])
async def detailed_health_check(request: Request, response: Response):
    """
    Detailed health check with component status.
    """
    db_check, redis_check = await asyncio.gather(
        check_database(request),
        check_redis(request),
        return_exceptions=True
    )

    if isinstance(db_check, Exception):
        db_check = {"status": "unhealthy", "message": str(db_check)}
    if isinstance(redis_check, Exception):
        redis_check = {"status": "degraded", "message": str(redis_check)}

    components = {
        "database": db_check,
        "redis": redis_check,
        "presence": check_presence(request),
        "circuit_breakers": {"status": "healthy", **get_all_circuit_breaker_stats()},
    }

    # Determine overall status
    statuses = [comp["status"] for comp in components.values()]
    if all(s == "healthy" for s in statuses):
        overall_status = "healthy"
    elif any(s == "unhealthy" for s in statuses):
        overall_status = "unhealthy"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        overall_status = "degraded"
        response.status_code = status.HTTP_200_OK

    return DetailedHealthStatus(
        status=overall_status,
        timestamp=datetime.utcnow().isoformat(),
        components=components,
        uptime_seconds=get_uptime()
    )
