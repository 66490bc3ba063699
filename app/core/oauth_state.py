"""
OAuth state token store.

Issues and validates the single-use CSRF `state` values embedded in provider
authorization URLs.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.timeutils import as_utc, utcnow
from app.models.integration import IntegrationKind
from app.models.oauth_state import OAuthState

logger = logging.getLogger(__name__)

# 32 random bytes -> 256 bits of entropy, ~43 url-safe characters
STATE_TOKEN_BYTES = 32


class InvalidStateError(Exception):
    """Callback state is missing, unknown, expired or already used."""

    kind = "InvalidState"

    def __init__(self, message: str = "Invalid state parameter. Please start the connection again."):
        super().__init__(message)
        self.message = message


class StateNotFoundError(InvalidStateError):
    def __init__(self):
        super().__init__("Unknown or already used state parameter. Please start the connection again.")


class StateExpiredError(InvalidStateError):
    def __init__(self):
        super().__init__("The connection request has expired. Please start the connection again.")


def generate_state_token() -> str:
    return secrets.token_urlsafe(STATE_TOKEN_BYTES)


def issue(
    db: Session,
    user_id: uuid.UUID,
    kind: IntegrationKind,
    redirect_url: Optional[str] = None,
    now: Optional[datetime] = None,
    ttl: Optional[timedelta] = None,
) -> OAuthState:
    """
    Issue a new state token for (user_id, kind).

    Any earlier pending token for the same pair is superseded (deleted).

    Returns:
        OAuthState: record carrying `state` and `expires_at`
    """
    now = as_utc(now) or utcnow()
    ttl = ttl or timedelta(minutes=settings.OAUTH_STATE_TTL_MINUTES)

    superseded = db.query(OAuthState).filter(
        OAuthState.user_id == user_id,
        OAuthState.kind == kind
    ).delete(synchronize_session=False)
    if superseded:
        logger.info(f"Superseded {superseded} pending {kind.value} state token(s) for user {user_id}")

    record = OAuthState(
        id=uuid.uuid4(),
        state=generate_state_token(),
        user_id=user_id,
        kind=kind,
        redirect_url=redirect_url,
        expires_at=now + ttl,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def validate_and_consume(db: Session, state: Optional[str], now: Optional[datetime] = None) -> OAuthState:
    """
    Validate a callback `state` and consume it.

    The row is removed with a conditional delete; when two callbacks race on
    the same token only the one whose delete hits the row succeeds.

    Raises:
        StateNotFoundError: Unknown token, or already consumed
        StateExpiredError: now >= expires_at
    """
    if not state:
        raise StateNotFoundError()

    now = as_utc(now) or utcnow()

    record = db.query(OAuthState).filter(OAuthState.state == state).first()
    if not record:
        raise StateNotFoundError()

    # Detach a copy of what the caller needs before the row goes away
    consumed = OAuthState(
        id=record.id,
        state=record.state,
        user_id=record.user_id,
        kind=record.kind,
        redirect_url=record.redirect_url,
        expires_at=as_utc(record.expires_at),
        created_at=record.created_at,
    )

    deleted = db.query(OAuthState).filter(
        OAuthState.id == record.id
    ).delete(synchronize_session=False)
    db.commit()

    if deleted != 1:
        logger.warning(f"State token for user {consumed.user_id} was consumed concurrently")
        raise StateNotFoundError()

    if now >= consumed.expires_at:
        logger.info(f"Expired {consumed.kind.value} state token presented for user {consumed.user_id}")
        raise StateExpiredError()

    return consumed


def purge_expired(db: Session, now: Optional[datetime] = None) -> int:
    """
    Delete state tokens whose expiry has passed.

    Returns:
        int: Number of rows removed
    """
    now = as_utc(now) or utcnow()
    count = db.query(OAuthState).filter(
        OAuthState.expires_at <= now
    ).delete(synchronize_session=False)
    db.commit()
    return count
