"""
Health check endpoints.

Provides health status for the database and the sync queue backlog.
"""

import logging
from typing import Dict, Any
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from sqlalchemy import text, func
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.core.database import get_db
from app.core.timeutils import as_utc, utcnow
from app.models.integration import Integration
from app.models.sync_attempt import SyncAttempt, SyncStatus

router = APIRouter(tags=["Health"])
logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> Dict[str, str]:
    """
    Basic health check endpoint.

    Returns 200 OK if the service is running.
    Use this for simple uptime monitoring and load balancer health checks.
    """
    return {
        "status": "healthy",
        "timestamp": _timestamp()
    }


@router.get("/health/detailed", status_code=status.HTTP_200_OK)
async def detailed_health_check(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Detailed health check with dependency status.

    Checks:
    - Database connectivity
    - Sync activity (active integrations, syncs in progress)
    """
    health_status = {
        "status": "healthy",
        "timestamp": _timestamp(),
        "checks": {}
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {
            "status": "healthy",
            "message": "Database connection successful"
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "message": f"Database error: {str(e)}"
        }
        return health_status

    try:
        in_progress = db.query(
            func.count(SyncAttempt.id), func.min(SyncAttempt.started_at)
        ).filter(SyncAttempt.status == SyncStatus.IN_PROGRESS).one()
        oldest = as_utc(in_progress[1]) if in_progress[1] else None
        stale = oldest is not None and utcnow() - oldest > timedelta(minutes=settings.SYNC_STALE_AFTER_MINUTES)

        health_status["checks"]["sync"] = {
            # Stale runs are reaped by the worker beat; seeing one here means beat is not running
            "status": "degraded" if stale else "healthy",
            "active_integrations": db.query(func.count(Integration.id)).filter(
                Integration.is_active == True  # noqa: E712
            ).scalar() or 0,
            "syncs_in_progress": in_progress[0] or 0,
            "oldest_in_progress_started_at": oldest.isoformat() if oldest else None,
        }
    except Exception as e:
        logger.error(f"Sync health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["sync"] = {
            "status": "unhealthy",
            "message": f"Sync tables unavailable: {str(e)}"
        }

    return health_status
