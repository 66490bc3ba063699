"""
CRUD operations for integrations (the integration registry).

Token arguments are plain text; they are encrypted here before storage.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID
from sqlalchemy.orm import Session

from app.core.encryption import token_cipher
from app.core.timeutils import utcnow
from app.models.integration import Integration, IntegrationKind


def get(db: Session, user_id: UUID, kind: IntegrationKind) -> Optional[Integration]:
    """
    Get the integration for a user and provider, active or not.
    """
    return db.query(Integration).filter(
        Integration.user_id == user_id,
        Integration.kind == kind
    ).first()


def get_by_id(db: Session, integration_id: UUID) -> Optional[Integration]:
    return db.query(Integration).filter(Integration.id == integration_id).first()


def get_for_user(db: Session, user_id: UUID, integration_id: UUID) -> Optional[Integration]:
    """
    Get an integration by id, scoped to its owner.
    """
    return db.query(Integration).filter(
        Integration.id == integration_id,
        Integration.user_id == user_id
    ).first()


def list_active_by_external_user(db: Session, kind: IntegrationKind, external_user_id: str) -> List[Integration]:
    """
    Active integrations of one provider account (provider webhooks name the
    account, not our user).
    """
    return db.query(Integration).filter(
        Integration.kind == kind,
        Integration.external_user_id == external_user_id,
        Integration.is_active == True  # noqa: E712
    ).all()


def list_active(db: Session, user_id: UUID) -> List[Integration]:
    return db.query(Integration).filter(
        Integration.user_id == user_id,
        Integration.is_active == True  # noqa: E712
    ).order_by(Integration.kind).all()


def list_all_active(db: Session) -> List[Integration]:
    """
    Every active integration, for the scheduled sync sweep.
    """
    return db.query(Integration).filter(
        Integration.is_active == True  # noqa: E712
    ).order_by(Integration.connected_at).all()


def create(
    db: Session,
    user_id: UUID,
    kind: IntegrationKind,
    external_user_id: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    token_expires_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> Integration:
    """
    Insert a new active integration.

    A second row for the same (user_id, kind) violates the unique index and
    raises IntegrityError; callers must reactivate instead.
    """
    integration = Integration(
        id=uuid.uuid4(),
        user_id=user_id,
        kind=kind,
        external_user_id=external_user_id,
        access_token=token_cipher.encrypt(access_token),
        refresh_token=token_cipher.encrypt(refresh_token),
        token_expires_at=token_expires_at,
        metadata_=metadata or {},
        is_active=True,
        connected_at=utcnow(),
    )

    db.add(integration)
    db.commit()
    db.refresh(integration)
    return integration


def reactivate(
    db: Session,
    integration: Integration,
    external_user_id: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    token_expires_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> Integration:
    """
    Reconnect an existing integration with fresh tokens, keeping its id and
    sync history.
    """
    integration.external_user_id = external_user_id
    integration.access_token = token_cipher.encrypt(access_token)
    integration.refresh_token = token_cipher.encrypt(refresh_token)
    integration.token_expires_at = token_expires_at
    if metadata:
        integration.metadata_ = {**(integration.metadata_ or {}), **metadata}
    integration.is_active = True
    integration.connected_at = utcnow()

    db.commit()
    db.refresh(integration)
    return integration


def update_tokens(
    db: Session,
    integration: Integration,
    access_token: str,
    refresh_token: Optional[str] = None,
    token_expires_at: Optional[datetime] = None
) -> Integration:
    """
    Store refreshed tokens. A missing refresh token keeps the current one.
    """
    integration.access_token = token_cipher.encrypt(access_token)
    if refresh_token:
        integration.refresh_token = token_cipher.encrypt(refresh_token)
    integration.token_expires_at = token_expires_at

    db.commit()
    db.refresh(integration)
    return integration


def get_access_token(integration: Integration) -> str:
    return token_cipher.decrypt(integration.access_token)


def get_refresh_token(integration: Integration) -> Optional[str]:
    return token_cipher.decrypt(integration.refresh_token)


def mark_synced(db: Session, integration: Integration, synced_at: datetime, cursor: Optional[str] = None) -> Integration:
    integration.last_sync_at = synced_at
    integration.sync_cursor = cursor
    db.commit()
    return integration


def set_inactive(db: Session, integration: Integration) -> Integration:
    integration.is_active = False
    db.commit()
    db.refresh(integration)
    return integration


def deactivate(db: Session, user_id: UUID, kind: IntegrationKind) -> bool:
    """
    Soft-delete an integration (history is kept).

    Returns:
        bool: True if an active integration was found and deactivated
    """
    integration = get(db, user_id, kind)
    if not integration or not integration.is_active:
        return False

    set_inactive(db, integration)
    return True
