"""
Tests for the OAuth handshake coordinator and the integration registry.

Tests cover:
- begin_connect / complete_connect happy path
- State failures never reach the provider
- Reconnect reactivates the same integration
- Disconnect (best-effort revoke, soft delete)
- Token encryption at rest
"""

import asyncio
import uuid
from urllib.parse import parse_qs, urlparse

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.exc import IntegrityError

from app.core import oauth_state
from app.core.encryption import TokenCipher, TokenDecryptionError
from app.core.oauth_state import InvalidStateError, StateNotFoundError
from app.crud import integration as integration_crud
from app.models.integration import Integration, IntegrationKind
from app.services.integration_service import IntegrationNotFoundError, IntegrationService
from app.services.providers import (
    ExternalErrorKind,
    ExternalServiceError,
    ProviderNotConfiguredError,
)


@pytest.fixture
def service():
    return IntegrationService(callback_url="https://api.test/api/v1/integrations/connect/callback")


def state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestBeginConnect:
    """Tests for starting a connection"""

    def test_authorization_url_embeds_issued_state(self, db_session, user_id, service, fake_provider):
        url, expires_at = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)

        state = state_from(url)
        query = parse_qs(urlparse(url).query)
        assert query["redirect_uri"] == [service.callback_url]
        assert expires_at is not None
        assert oauth_state.validate_and_consume(db_session, state).user_id == user_id

    def test_unconfigured_provider(self, db_session, user_id, service, fake_provider):
        fake_provider.configured = False

        with pytest.raises(ProviderNotConfiguredError):
            service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)


class TestCompleteConnect:
    """Tests for finishing a connection"""

    def test_creates_active_integration(self, db_session, user_id, service, fake_provider):
        url, _ = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA, redirect_url="https://app.test/done")

        integration, redirect_url = asyncio.run(
            service.complete_connect(db_session, code="auth-code", state=state_from(url))
        )

        assert integration.user_id == user_id
        assert integration.kind == IntegrationKind.STRAVA
        assert integration.is_active is True
        assert integration.external_user_id == "athlete-42"
        assert integration.metadata_["athlete_name"] == "Test Athlete"
        assert integration.metadata_["scopes"] == ["read", "activity:read_all"]
        assert redirect_url == "https://app.test/done"
        assert fake_provider.exchanged_codes == ["auth-code"]

    def test_replayed_state_is_rejected_without_exchange(self, db_session, user_id, service, fake_provider):
        url, _ = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)
        state = state_from(url)
        asyncio.run(service.complete_connect(db_session, code="auth-code", state=state))

        with pytest.raises(StateNotFoundError):
            asyncio.run(service.complete_connect(db_session, code="auth-code", state=state))

        assert fake_provider.exchanged_codes == ["auth-code"]
        assert db_session.query(Integration).count() == 1

    def test_forged_state_is_rejected(self, db_session, service, fake_provider):
        with pytest.raises(InvalidStateError):
            asyncio.run(service.complete_connect(db_session, code="auth-code", state="forged"))

        assert fake_provider.exchanged_codes == []
        assert db_session.query(Integration).count() == 0

    def test_kind_mismatch_is_invalid_state(self, db_session, user_id, service, fake_provider):
        url, _ = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)

        with pytest.raises(InvalidStateError):
            asyncio.run(service.complete_connect(
                db_session, code="auth-code", state=state_from(url), kind=IntegrationKind.MYFITNESSPAL
            ))

        assert fake_provider.exchanged_codes == []

    def test_declined_authorization_consumes_state(self, db_session, user_id, service, fake_provider):
        url, _ = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)
        state = state_from(url)

        with pytest.raises(InvalidStateError):
            asyncio.run(service.complete_connect(db_session, code=None, state=state))
        with pytest.raises(StateNotFoundError):
            asyncio.run(service.complete_connect(db_session, code="auth-code", state=state))

    def test_exchange_failure_surfaces_and_creates_nothing(self, db_session, user_id, service, fake_provider):
        fake_provider.exchange_error = ExternalServiceError("Strava API error: 400", ExternalErrorKind.FATAL)
        url, _ = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)

        with pytest.raises(ExternalServiceError):
            asyncio.run(service.complete_connect(db_session, code="bad-code", state=state_from(url)))

        assert db_session.query(Integration).count() == 0

    def test_reconnect_reactivates_same_integration(self, db_session, user_id, service, fake_provider, integration):
        integration_crud.deactivate(db_session, user_id, IntegrationKind.STRAVA)
        fake_provider.grant = fake_provider.grant.model_copy(update={"access_token": "access-2"})

        url, _ = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)
        reconnected, _ = asyncio.run(service.complete_connect(db_session, code="again", state=state_from(url)))

        assert reconnected.id == integration.id
        assert reconnected.is_active is True
        assert integration_crud.get_access_token(reconnected) == "access-2"
        assert db_session.query(Integration).count() == 1

    def test_concurrent_connect_loser_fails_loudly(self, db_session, user_id, service, fake_provider, monkeypatch):
        first_url, _ = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)
        second_url, _ = service.begin_connect(db_session, user_id, IntegrationKind.STRAVA)
        asyncio.run(service.complete_connect(db_session, code="first", state=state_from(first_url)))
        # The second callback looked for an existing row before the first one committed
        monkeypatch.setattr(integration_crud, "get", lambda db, user_id, kind: None)

        with pytest.raises(IntegrityError):
            asyncio.run(service.complete_connect(db_session, code="second", state=state_from(second_url)))

        db_session.rollback()
        assert db_session.query(Integration).filter(Integration.is_active == True).count() == 1  # noqa: E712


class TestDisconnect:
    """Tests for disconnecting"""

    def test_disconnect_revokes_and_deactivates(self, db_session, user_id, service, fake_provider, integration):
        result = asyncio.run(service.disconnect(db_session, user_id, integration.id))

        assert result.is_active is False
        assert fake_provider.revoked == ["access-1"]
        assert integration_crud.list_active(db_session, user_id) == []

    def test_revoke_failure_is_not_fatal(self, db_session, user_id, service, fake_provider, integration):
        fake_provider.revoke_error = ExternalServiceError("Strava unreachable", ExternalErrorKind.TRANSIENT)

        result = asyncio.run(service.disconnect(db_session, user_id, integration.id))

        assert result.is_active is False

    def test_disconnect_someone_elses_integration(self, db_session, service, fake_provider, integration):
        with pytest.raises(IntegrationNotFoundError):
            asyncio.run(service.disconnect(db_session, uuid.uuid4(), integration.id))

        db_session.refresh(integration)
        assert integration.is_active is True

    def test_disconnect_twice(self, db_session, user_id, service, fake_provider, integration):
        asyncio.run(service.disconnect(db_session, user_id, integration.id))

        with pytest.raises(IntegrationNotFoundError):
            asyncio.run(service.disconnect(db_session, user_id, integration.id))


class TestRegistry:
    """Tests for the integration registry"""

    def test_list_active_excludes_inactive(self, db_session, user_id, integration):
        assert [i.id for i in integration_crud.list_active(db_session, user_id)] == [integration.id]

        assert integration_crud.deactivate(db_session, user_id, IntegrationKind.STRAVA) is True
        assert integration_crud.list_active(db_session, user_id) == []
        assert integration_crud.deactivate(db_session, user_id, IntegrationKind.STRAVA) is False

    def test_second_row_for_same_user_and_kind_is_rejected(self, db_session, user_id, integration):
        with pytest.raises(IntegrityError):
            integration_crud.create(
                db_session,
                user_id=user_id,
                kind=IntegrationKind.STRAVA,
                external_user_id="athlete-43",
                access_token="access-2",
            )

        db_session.rollback()
        assert db_session.query(Integration).count() == 1

    def test_update_tokens_keeps_refresh_token_when_absent(self, db_session, integration):
        integration_crud.update_tokens(db_session, integration, access_token="access-9")

        assert integration_crud.get_access_token(integration) == "access-9"
        assert integration_crud.get_refresh_token(integration) == "refresh-1"


class TestTokenCipher:
    """Tests for token encryption at rest"""

    def test_encrypt_round_trip(self):
        cipher = TokenCipher(Fernet.generate_key().decode())

        stored = cipher.encrypt("secret-token")

        assert stored != "secret-token"
        assert cipher.decrypt(stored) == "secret-token"

    def test_wrong_key(self):
        stored = TokenCipher(Fernet.generate_key().decode()).encrypt("secret-token")

        with pytest.raises(TokenDecryptionError):
            TokenCipher(Fernet.generate_key().decode()).decrypt(stored)

    def test_none_passes_through(self):
        cipher = TokenCipher(Fernet.generate_key().decode())
        assert cipher.encrypt(None) is None
        assert cipher.decrypt(None) is None
