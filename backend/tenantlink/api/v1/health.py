# backend/tenantlink/api/v1/health.py

"""
Health endpoints for the invite service.

- /api/v1/health       -> lightweight liveness (no store access)
- /api/v1/health/db    -> store readiness check (small SELECT 1)
"""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

from tenantlink.core.config import settings
from tenantlink.db.session import get_db

logger = logging.getLogger("tenantlink.health")

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Liveness check")
def health():
    return {
        "status": "ok",
        "service": "tenantlink",
        "version": settings.version,
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/db", summary="Store readiness check")
def health_db(db: Session = Depends(get_db)):
    """
    Returns 200 when the store answers a `SELECT 1`, 503 when not.
    The error class is reported, never the connection string.
    """
    start = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.exception("Store health check failed")
        raise HTTPException(
            status_code=503,
            detail={
                "status": "error",
                "db": "down",
                "error": exc.__class__.__name__,
            },
        )

    return {
        "status": "ok",
        "db": "up",
        "latency_ms": int((time.perf_counter() - start) * 1000),
    }
