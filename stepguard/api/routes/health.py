"""
Health Check Endpoints.

Provides health status for the API and its dependencies.
"""
import os
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ..models import HealthStatus, ServiceHealth
from ..deps import get_db, get_redis_client
from ...database.auth_db import AuthDB

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

VERSION = os.getenv("APP_VERSION", "0.1.0")


def _check_database(db: AuthDB) -> ServiceHealth:
    try:
        start = time.time()
        db.health_check()
        return ServiceHealth(name="database", status="healthy", latency_ms=(time.time() - start) * 1000)
    except SQLAlchemyError as e:
        return ServiceHealth(name="database", status="unhealthy", error=str(e))


def _check_redis() -> ServiceHealth:
    redis_client = get_redis_client()
    if redis_client is None:
        # Rate limiting keeps working from memory
        return ServiceHealth(name="redis", status="fallback_mode")
    try:
        start = time.time()
        redis_client.ping()
        return ServiceHealth(name="redis", status="healthy", latency_ms=(time.time() - start) * 1000)
    except Exception as e:
        return ServiceHealth(name="redis", status="unhealthy", error=str(e))


@router.get("", response_model=HealthStatus)
async def health_check(db: AuthDB = Depends(get_db)):
    """
    Basic health check endpoint.

    Returns overall system status.
    """
    database = _check_database(db)
    redis_health = _check_redis()

    services = {}
    for check in (database, redis_health):
        if check.latency_ms is not None:
            services[check.name] = f"{check.status} ({check.latency_ms:.1f}ms)"
        elif check.error:
            services[check.name] = f"{check.status}: {check.error}"
        else:
            services[check.name] = check.status

    return HealthStatus(
        status="healthy" if database.status == "healthy" else "unhealthy",
        version=VERSION,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/live")
async def liveness():
    """Kubernetes liveness probe."""
    return {"status": "alive"}


@router.get("/ready")
async def readiness(db: AuthDB = Depends(get_db)):
    """
    Kubernetes readiness probe.

    Returns 503 while the database is unreachable.
    """
    database = _check_database(db)
    if database.status != "healthy":
        logger.error(f"Readiness check failed: {database.error}")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": database.error})
    return {"status": "ready"}


@router.get("/detailed", response_model=dict)
async def detailed_health(db: AuthDB = Depends(get_db)):
    """Detailed health check with all service statuses."""
    checks = [_check_database(db), _check_redis()]
    overall = "healthy" if all(c.status in ("healthy", "fallback_mode") for c in checks) else "degraded"

    return {
        "status": overall,
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": [c.model_dump() for c in checks],
    }
