"""
OAuth handshake coordinator.

Drives the connect flow for every provider:
1. begin_connect issues a state token and builds the provider's authorization URL
2. the provider redirects back with code + state
3. complete_connect consumes the state, exchanges the code and upserts the
   integration

Also owns disconnecting (best-effort revoke, then soft delete).
"""

import logging
from datetime import datetime
from typing import Optional, Tuple
from uuid import UUID
from sqlalchemy.orm import Session

from app.core import oauth_state
from app.core.config import settings
from app.core.oauth_state import InvalidStateError
from app.crud import integration as integration_crud
from app.models.integration import Integration, IntegrationKind
from app.services.providers import (
    ExternalServiceError,
    FitnessProvider,
    ProviderNotConfiguredError,
    get_provider,
)

logger = logging.getLogger(__name__)


class IntegrationNotFoundError(Exception):
    """No integration with that id (for that user), or it is inactive."""

    kind = "NotFound"

    def __init__(self, message: str = "Integration not found"):
        super().__init__(message)
        self.message = message


class IntegrationService:

    def __init__(self, callback_url: Optional[str] = None):
        self._callback_url = callback_url

    @property
    def callback_url(self) -> str:
        return self._callback_url or settings.OAUTH_CALLBACK_URL

    def _configured_provider(self, kind: IntegrationKind) -> FitnessProvider:
        provider = get_provider(kind)
        if not provider.is_configured:
            raise ProviderNotConfiguredError(provider.display_name)
        return provider

    def begin_connect(
        self,
        db: Session,
        user_id: UUID,
        kind: IntegrationKind,
        redirect_url: Optional[str] = None
    ) -> Tuple[str, datetime]:
        """
        Start connecting `kind` for a user.

        Returns:
            Tuple of (authorization_url, state_expires_at)

        Raises:
            ProviderNotConfiguredError: Client credentials are missing
        """
        provider = self._configured_provider(kind)

        record = oauth_state.issue(db, user_id, kind, redirect_url=redirect_url)
        authorization_url = provider.build_authorization_url(record.state, self.callback_url)

        logger.info(f"Issued {kind.value} authorization request for user {user_id}")
        return authorization_url, record.expires_at

    async def complete_connect(
        self,
        db: Session,
        code: Optional[str],
        state: Optional[str],
        kind: Optional[IntegrationKind] = None
    ) -> Tuple[Integration, Optional[str]]:
        """
        Finish the handshake for a provider callback.

        The state is consumed before anything else, so a replayed or forged
        callback never reaches the provider.

        Args:
            kind: Provider named by the callback, if it names one; must match
                the kind the state was issued for

        Returns:
            Tuple of (integration, redirect_url stored with the state)

        Raises:
            InvalidStateError: Unknown, used, expired or mismatched state
            ExternalServiceError: Code exchange failed
        """
        record = oauth_state.validate_and_consume(db, state)

        if kind is not None and IntegrationKind(kind) != record.kind:
            logger.warning(
                f"Callback for {IntegrationKind(kind).value} presented a {record.kind.value} state (user {record.user_id})"
            )
            raise InvalidStateError("State does not belong to this provider. Please start the connection again.")

        if not code:
            raise InvalidStateError("Authorization was not granted. Please start the connection again.")

        provider = self._configured_provider(record.kind)

        try:
            grant = await provider.exchange_code(code, self.callback_url)
        except ExternalServiceError as e:
            logger.error(f"{provider.display_name} code exchange failed for user {record.user_id}: {e.message}")
            raise

        metadata = {**grant.metadata, "scopes": list(grant.scopes)}
        existing = integration_crud.get(db, record.user_id, record.kind)
        if existing:
            integration = integration_crud.reactivate(
                db,
                existing,
                external_user_id=grant.external_user_id,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                token_expires_at=grant.expires_at,
                metadata=metadata,
            )
            logger.info(f"{provider.display_name} integration reconnected for user {record.user_id}")
        else:
            integration = integration_crud.create(
                db,
                user_id=record.user_id,
                kind=record.kind,
                external_user_id=grant.external_user_id,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                token_expires_at=grant.expires_at,
                metadata=metadata,
            )
            logger.info(f"{provider.display_name} integration connected for user {record.user_id}")

        return integration, record.redirect_url

    async def disconnect(self, db: Session, user_id: UUID, integration_id: UUID) -> Integration:
        """
        Disconnect an integration: revoke at the provider (best effort), then
        deactivate. Sync history is kept.

        Raises:
            IntegrationNotFoundError: Not the caller's, or already inactive
        """
        integration = integration_crud.get_for_user(db, user_id, integration_id)
        if not integration or not integration.is_active:
            raise IntegrationNotFoundError()

        provider = get_provider(integration.kind)
        try:
            revoked = await provider.revoke_token(integration_crud.get_access_token(integration))
            if revoked:
                logger.info(f"Revoked {provider.display_name} token for user {user_id}")
        except Exception as e:
            logger.warning(f"Could not revoke {provider.display_name} token for user {user_id}: {e}")

        integration_crud.deactivate(db, user_id, integration.kind)
        db.refresh(integration)

        logger.info(f"{provider.display_name} integration disconnected for user {user_id}")
        return integration


# Singleton instance
integration_service = IntegrationService()
