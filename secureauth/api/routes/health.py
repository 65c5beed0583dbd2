"""
Health Check Endpoints.

The database is required for sign-in. Redis only holds flow state and rate
limit counters, which fall back to process memory, so a Redis failure
degrades the service rather than taking it down.
"""
import os
import time
import logging
from typing import Tuple
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis

from ..models import HealthStatus
from ..deps import get_db, get_redis_client
from ...database.auth_db import AuthDB

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

VERSION = os.getenv("APP_VERSION", "0.1.0")


def _elapsed_ms(started: float) -> str:
    return f"{(time.perf_counter() - started) * 1000:.1f}ms"


def _check_database(db: AuthDB) -> Tuple[bool, str]:
    started = time.perf_counter()
    try:
        with db.get_session() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Database unreachable: {e}")
        return False, f"unhealthy: {e}"
    return True, f"healthy ({_elapsed_ms(started)})"


def _check_redis() -> Tuple[bool, str]:
    client = get_redis_client()
    if client is None:
        return True, "fallback_mode (in-memory)"

    started = time.perf_counter()
    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis unreachable: {e}")
        return False, f"unhealthy: {e}"
    return True, f"healthy ({_elapsed_ms(started)})"


@router.get("", response_model=HealthStatus)
async def health_check(db: AuthDB = Depends(get_db)):
    """Report database and Redis status."""
    database_ok, database_status = _check_database(db)
    redis_ok, redis_status = _check_redis()

    if not database_ok:
        overall = "unhealthy"
    elif not redis_ok:
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthStatus(
        status=overall,
        version=VERSION,
        services={"database": database_status, "redis": redis_status},
        timestamp=datetime.now(timezone.utc),
    )
