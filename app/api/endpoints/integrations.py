"""
Integration endpoints.

Connect/disconnect external fitness providers and drive data syncs.
The OAuth callback is the only unauthenticated route: the caller's identity
comes from the single-use state token.
"""

import logging
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.celery_utils import queue_task_safely
from app.core.database import get_db
from app.core.deps import get_current_user_id
from app.crud import integration as integration_crud
from app.crud import sync_attempt as attempt_crud
from app.models.integration import Integration, IntegrationKind
from app.models.sync_attempt import SyncTrigger
from app.schemas.integration import (
    ConnectBeginRequest,
    ConnectBeginResponse,
    ConnectCallbackResponse,
    IntegrationKindInfo,
    IntegrationKindsResponse,
    IntegrationResponse,
)
from app.schemas.sync import SyncAttemptResponse
from app.services.integration_service import IntegrationNotFoundError, integration_service
from app.services.providers import get_provider
from app.services.sync_engine import NoSyncInProgressError, sync_engine
from app.tasks.sync_tasks import run_sync_attempt_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["Integrations"])


def _get_owned_integration(db: Session, user_id: UUID, integration_id: UUID) -> Integration:
    integration = integration_crud.get_for_user(db, user_id, integration_id)
    if not integration:
        raise IntegrationNotFoundError()
    return integration


@router.get("/kinds", response_model=IntegrationKindsResponse)
async def list_integration_kinds():
    """
    Supported providers and whether this server has credentials for them.
    """
    kinds = []
    for kind in IntegrationKind:
        provider = get_provider(kind)
        kinds.append(IntegrationKindInfo(kind=kind, name=provider.display_name, configured=provider.is_configured))
    return IntegrationKindsResponse(kinds=kinds)


@router.get("", response_model=List[IntegrationResponse])
async def list_integrations(
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Get the caller's active integrations.
    """
    return integration_crud.list_active(db, user_id)


@router.post("/connect/begin", response_model=ConnectBeginResponse)
async def begin_connect(
    request: ConnectBeginRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Step 1: Start connecting a provider.

    Returns:
        ConnectBeginResponse: authorization_url to send the user to, and when
        the embedded state expires
    """
    authorization_url, expires_at = integration_service.begin_connect(
        db, user_id, request.kind, redirect_url=request.redirect_url
    )
    return ConnectBeginResponse(authorization_url=authorization_url, state_expires_at=expires_at)


@router.get("/connect/callback", response_model=ConnectCallbackResponse)
async def connect_callback(
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    kind: Optional[IntegrationKind] = Query(None, description="Provider the callback is for"),
    error: Optional[str] = Query(None, description="Set by the provider when the user declined"),
    db: Session = Depends(get_db)
):
    """
    Step 2: Provider redirects here after the user authorizes (or declines).

    Raises:
        InvalidStateError (400): state missing, unknown, used or expired
        ExternalServiceError (502): code exchange failed
    """
    if error:
        logger.info(f"Provider callback returned error={error!r}")

    integration, redirect_url = await integration_service.complete_connect(
        db, code=None if error else code, state=state, kind=kind
    )

    return ConnectCallbackResponse(
        integration=IntegrationResponse.model_validate(integration),
        redirect_url=redirect_url,
        message=f"{get_provider(integration.kind).display_name} account connected successfully!",
    )


@router.get("/{integration_id}", response_model=IntegrationResponse)
async def get_integration(
    integration_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return _get_owned_integration(db, user_id, integration_id)


@router.post("/{integration_id}/disconnect", response_model=IntegrationResponse)
async def disconnect_integration(
    integration_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Disconnect a provider (soft delete). Sync history is kept; connecting
    again reactivates the same integration.
    """
    return await integration_service.disconnect(db, user_id, integration_id)


@router.post("/{integration_id}/sync", response_model=SyncAttemptResponse, status_code=status.HTTP_201_CREATED)
async def start_sync(
    integration_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Start a sync for an integration.

    The attempt is claimed here and executed by a worker; poll
    /syncs/current or /syncs for progress.

    Raises:
        SyncAlreadyRunningError (409): another sync holds the slot
    """
    integration = _get_owned_integration(db, user_id, integration_id)
    attempt = sync_engine.claim(db, integration.id, SyncTrigger.MANUAL)

    if not queue_task_safely(run_sync_attempt_task, attempt.id):
        sync_engine.abort(db, attempt, "Could not queue sync job")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync queue is unavailable. Please try again shortly."
        )

    logger.info(f"Sync attempt {attempt.id} queued for integration {integration.id}")
    return attempt


@router.get("/{integration_id}/syncs", response_model=List[SyncAttemptResponse])
async def get_sync_history(
    integration_id: UUID,
    limit: int = Query(10, ge=1, le=settings.SYNC_HISTORY_MAX_LIMIT),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Sync attempts for an integration, most recent first.
    """
    integration = _get_owned_integration(db, user_id, integration_id)
    return attempt_crud.history(db, integration.id, limit=limit)


@router.get("/{integration_id}/syncs/current", response_model=SyncAttemptResponse)
async def get_current_sync(
    integration_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    integration = _get_owned_integration(db, user_id, integration_id)
    attempt = attempt_crud.current(db, integration.id)
    if not attempt:
        raise NoSyncInProgressError()
    return attempt


@router.post("/{integration_id}/syncs/cancel", response_model=SyncAttemptResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_sync(
    integration_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Ask the running sync to stop. It finishes as cancelled at the next page
    boundary, keeping what it already imported.
    """
    integration = _get_owned_integration(db, user_id, integration_id)
    return sync_engine.request_cancel(db, integration.id)
