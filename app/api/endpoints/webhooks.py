"""
Strava webhook handler.

Strava pushes athlete events instead of us polling between scheduled syncs:
- GET  /webhooks/strava: subscription validation (echo hub.challenge)
- POST /webhooks/strava: activity create/update triggers a sync for the
  athlete's integration; athlete deauthorization deactivates it

Strava expects a 200 within two seconds, so events only claim and queue.
"""

import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.core.celery_utils import queue_task_safely
from app.core.config import settings
from app.core.database import get_db
from app.crud import integration as integration_crud
from app.models.integration import IntegrationKind
from app.models.sync_attempt import SyncTrigger
from app.services.sync_engine import SyncAlreadyRunningError, sync_engine
from app.tasks.sync_tasks import run_sync_attempt_task

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = logging.getLogger(__name__)

SYNC_ASPECTS = ("create", "update")


@router.get("/strava")
async def verify_strava_subscription(
    mode: str = Query(..., alias="hub.mode"),
    challenge: str = Query(..., alias="hub.challenge"),
    verify_token: str = Query(..., alias="hub.verify_token"),
):
    """
    Answer Strava's subscription validation request.
    """
    expected = settings.STRAVA_WEBHOOK_VERIFY_TOKEN
    if mode != "subscribe" or not expected or verify_token != expected:
        logger.warning("Rejected Strava webhook subscription validation")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid verification request")

    return {"hub.challenge": challenge}


@router.post("/strava")
async def strava_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle a Strava event.

    Event types handled:
    - activity create/update: start a sync for the owning integration
    - athlete update with authorized=false: the athlete revoked access
    """
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    object_type = payload.get("object_type")
    aspect_type = payload.get("aspect_type")
    logger.info(f"Received Strava webhook: {object_type}.{aspect_type} for owner {payload.get('owner_id')}")

    if object_type == "athlete" and str((payload.get("updates") or {}).get("authorized")).lower() == "false":
        return {"status": handle_deauthorization(db, payload)}
    if object_type == "activity" and aspect_type in SYNC_ASPECTS:
        return {"status": handle_activity_event(db, payload)}

    logger.info(f"Unhandled Strava event: {object_type}.{aspect_type}")
    return {"status": "ignored"}


def _integrations_for_owner(db: Session, payload: Dict[str, Any]):
    owner_id = payload.get("owner_id")
    if owner_id is None:
        return []
    return integration_crud.list_active_by_external_user(db, IntegrationKind.STRAVA, str(owner_id))


def handle_deauthorization(db: Session, payload: Dict[str, Any]) -> str:
    integrations = _integrations_for_owner(db, payload)
    for integration in integrations:
        integration_crud.set_inactive(db, integration)
        logger.info(f"Strava athlete {payload.get('owner_id')} deauthorized; integration {integration.id} deactivated")
    return "deauthorized" if integrations else "ignored"


def handle_activity_event(db: Session, payload: Dict[str, Any]) -> str:
    """
    Claim and queue a webhook-triggered sync for each matching integration.

    Raises:
        HTTPException 503: The worker queue is unreachable (Strava retries)
    """
    integrations = _integrations_for_owner(db, payload)
    if not integrations:
        logger.info(f"No active Strava integration for athlete {payload.get('owner_id')}")
        return "ignored"

    queued = 0
    for integration in integrations:
        try:
            attempt = sync_engine.claim(db, integration.id, SyncTrigger.WEBHOOK)
        except SyncAlreadyRunningError:
            # Already syncing
            continue

        if not queue_task_safely(run_sync_attempt_task, attempt.id):
            sync_engine.abort(db, attempt, "Could not queue sync job")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Sync queue unavailable"
            )
        queued += 1

    return "queued" if queued else "already_running"
