"""
System Router - Health checks
"""
import logging

import redis
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from presence_cert.config import settings
from presence_cert.dependencies import get_db
from presence_cert.timeutils import utc_now

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """
    Health of the service and its stores.

    Redis only backs the geocoding cache, so an unreachable Redis degrades
    the service instead of failing it.
    """
    database_status = "unhealthy"
    try:
        db.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    redis_status = "unhealthy"
    try:
        redis.from_url(settings.REDIS_URL, socket_connect_timeout=2).ping()
        redis_status = "healthy"
    except Exception as e:
        logger.debug(f"Redis health check failed: {e}")

    if database_status != "healthy":
        overall = "unhealthy"
    elif redis_status != "healthy":
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "database": database_status,
        "redis": redis_status,
        "timestamp": utc_now().isoformat()
    }
