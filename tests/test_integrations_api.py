"""
Tests for the integration HTTP endpoints.

Tests cover:
- Authentication
- Connect flow (begin + callback), including error bodies
- Listing, fetching, disconnecting integrations
- Triggering, polling and cancelling syncs
"""

import uuid
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from app.core.security import create_access_token
from app.core.timeutils import utcnow
from app.crud import integration as integration_crud
from app.crud import sync_attempt as attempt_crud
from app.models.integration import Integration
from app.models.sync_attempt import SyncStatus
from app.services.providers import ExternalErrorKind, ExternalServiceError
from app.services.sync_engine import sync_engine
from main import app


def begin(client, auth_headers, **body):
    response = client.post(
        "/api/v1/integrations/connect/begin",
        json={"kind": "strava", **body},
        headers=auth_headers,
    )
    assert response.status_code == 200
    url = response.json()["authorization_url"]
    return parse_qs(urlparse(url).query)["state"][0]


class TestAuthentication:

    def test_requires_bearer_token(self, client):
        response = client.get("/api/v1/integrations")
        assert response.status_code in (401, 403)

    def test_rejects_bad_token(self, client):
        response = client.get("/api/v1/integrations", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_rejects_expired_token(self, client, user_id):
        token = create_access_token({"sub": str(user_id)}, expires_delta=timedelta(minutes=-1))

        response = client.get("/api/v1/integrations", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401


class TestConnectFlow:

    def test_begin_returns_authorization_url(self, client, auth_headers, fake_provider):
        response = client.post(
            "/api/v1/integrations/connect/begin",
            json={"kind": "strava"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["authorization_url"].startswith("https://provider.test/authorize")
        assert "state_expires_at" in data

    def test_begin_unknown_kind(self, client, auth_headers):
        response = client.post(
            "/api/v1/integrations/connect/begin",
            json={"kind": "garmin"},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_begin_unconfigured_provider(self, client, auth_headers, fake_provider):
        fake_provider.configured = False

        response = client.post(
            "/api/v1/integrations/connect/begin",
            json={"kind": "strava"},
            headers=auth_headers,
        )

        assert response.status_code == 503
        assert response.json()["kind"] == "ProviderNotConfigured"

    def test_callback_connects_without_auth_header(self, client, auth_headers, user_id, fake_provider):
        state = begin(client, auth_headers, redirect_url="https://app.test/connected")

        response = client.get("/api/v1/integrations/connect/callback", params={"code": "c0de", "state": state})

        assert response.status_code == 200
        data = response.json()
        assert data["integration"]["kind"] == "strava"
        assert data["integration"]["is_active"] is True
        assert data["integration"]["metadata"]["athlete_name"] == "Test Athlete"
        assert "access_token" not in data["integration"]
        assert data["redirect_url"] == "https://app.test/connected"

        listed = client.get("/api/v1/integrations", headers=auth_headers).json()
        assert [i["id"] for i in listed] == [data["integration"]["id"]]

    def test_callback_replay_is_invalid_state(self, client, auth_headers, fake_provider):
        state = begin(client, auth_headers)
        client.get("/api/v1/integrations/connect/callback", params={"code": "c0de", "state": state})

        response = client.get("/api/v1/integrations/connect/callback", params={"code": "c0de", "state": state})

        assert response.status_code == 400
        assert response.json()["kind"] == "InvalidState"
        assert response.json()["message"]

    def test_callback_without_state(self, client, fake_provider):
        response = client.get("/api/v1/integrations/connect/callback", params={"code": "c0de"})

        assert response.status_code == 400
        assert response.json()["kind"] == "InvalidState"

    def test_callback_user_declined(self, client, auth_headers, fake_provider):
        state = begin(client, auth_headers)

        response = client.get(
            "/api/v1/integrations/connect/callback",
            params={"error": "access_denied", "state": state},
        )

        assert response.status_code == 400
        assert fake_provider.exchanged_codes == []

    def test_callback_exchange_failure(self, client, auth_headers, fake_provider):
        fake_provider.exchange_error = ExternalServiceError("Strava unreachable", ExternalErrorKind.TRANSIENT)
        state = begin(client, auth_headers)

        response = client.get("/api/v1/integrations/connect/callback", params={"code": "c0de", "state": state})

        assert response.status_code == 502
        assert response.json() == {"kind": "ExternalServiceError", "message": "Strava unreachable"}


    def test_concurrent_callback_loser_gets_server_error(self, client, auth_headers, db_session, fake_provider, monkeypatch):
        first = begin(client, auth_headers)
        second = begin(client, auth_headers)
        client.get("/api/v1/integrations/connect/callback", params={"code": "c0de", "state": first})
        monkeypatch.setattr(integration_crud, "get", lambda db, user_id, kind: None)

        response = TestClient(app, raise_server_exceptions=False).get(
            "/api/v1/integrations/connect/callback", params={"code": "c0de", "state": second}
        )

        assert response.status_code == 500
        db_session.rollback()
        assert db_session.query(Integration).count() == 1

class TestIntegrations:

    def test_list_kinds(self, client, fake_provider):
        response = client.get("/api/v1/integrations/kinds")

        assert response.status_code == 200
        kinds = {k["kind"]: k for k in response.json()["kinds"]}
        assert set(kinds) == {"strava", "myfitnesspal"}
        assert kinds["strava"]["configured"] is True

    def test_get_integration(self, client, auth_headers, integration):
        response = client.get(f"/api/v1/integrations/{integration.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["external_user_id"] == "athlete-42"

    def test_get_other_users_integration(self, client, integration):
        headers = {"Authorization": f"Bearer {create_access_token({'sub': str(uuid.uuid4())})}"}

        response = client.get(f"/api/v1/integrations/{integration.id}", headers=headers)

        assert response.status_code == 404
        assert response.json()["kind"] == "NotFound"

    def test_disconnect(self, client, auth_headers, integration, fake_provider):
        response = client.post(f"/api/v1/integrations/{integration.id}/disconnect", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert client.get("/api/v1/integrations", headers=auth_headers).json() == []


class TestSyncEndpoints:

    def test_start_sync_queues_attempt(self, client, auth_headers, integration, mock_queue):
        response = client.post(f"/api/v1/integrations/{integration.id}/sync", headers=auth_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "in_progress"
        assert data["records_processed"] == 0
        assert mock_queue == [("app.tasks.sync_tasks.run_sync_attempt_task", (data["id"],), {})]

    def test_second_sync_conflicts(self, client, auth_headers, integration, mock_queue):
        first = client.post(f"/api/v1/integrations/{integration.id}/sync", headers=auth_headers).json()

        response = client.post(f"/api/v1/integrations/{integration.id}/sync", headers=auth_headers)

        assert response.status_code == 409
        body = response.json()
        assert body["kind"] == "AlreadyRunning"
        assert body["attempt"]["id"] == first["id"]
        assert len(mock_queue) == 1

    def test_queue_failure_aborts_attempt(self, client, auth_headers, integration, db_session, monkeypatch):
        monkeypatch.setattr("app.api.endpoints.integrations.queue_task_safely", lambda task, *args: False)

        response = client.post(f"/api/v1/integrations/{integration.id}/sync", headers=auth_headers)

        assert response.status_code == 503
        history = attempt_crud.history(db_session, integration.id)
        assert history[0].status == SyncStatus.FAILED
        assert attempt_crud.current(db_session, integration.id) is None

    def test_sync_inactive_integration(self, client, auth_headers, integration, db_session, mock_queue):
        integration.is_active = False
        db_session.commit()

        response = client.post(f"/api/v1/integrations/{integration.id}/sync", headers=auth_headers)

        assert response.status_code == 404
        assert mock_queue == []

    def test_current_and_cancel(self, client, auth_headers, integration, mock_queue):
        assert client.get(f"/api/v1/integrations/{integration.id}/syncs/current", headers=auth_headers).status_code == 404

        started = client.post(f"/api/v1/integrations/{integration.id}/sync", headers=auth_headers).json()

        current = client.get(f"/api/v1/integrations/{integration.id}/syncs/current", headers=auth_headers)
        assert current.status_code == 200
        assert current.json()["id"] == started["id"]

        cancelled = client.post(f"/api/v1/integrations/{integration.id}/syncs/cancel", headers=auth_headers)
        assert cancelled.status_code == 202
        assert cancelled.json()["cancel_requested"] is True

    def test_cancel_without_running_sync(self, client, auth_headers, integration):
        response = client.post(f"/api/v1/integrations/{integration.id}/syncs/cancel", headers=auth_headers)

        assert response.status_code == 404

    def test_history_most_recent_first(self, client, auth_headers, integration, db_session):
        for _ in range(3):
            attempt = sync_engine.claim(db_session, integration.id)
            sync_engine.abort(db_session, attempt, "stopped")

        response = client.get(f"/api/v1/integrations/{integration.id}/syncs", params={"limit": 2}, headers=auth_headers)

        assert response.status_code == 200
        ids = [a["id"] for a in response.json()]
        assert len(ids) == 2
        assert ids == sorted(ids, reverse=True)

    def test_history_limit_validated(self, client, auth_headers, integration):
        response = client.get(f"/api/v1/integrations/{integration.id}/syncs", params={"limit": 0}, headers=auth_headers)
        assert response.status_code == 422


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_detailed_health(self, client, db_session):
        data = client.get("/health/detailed").json()

        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["sync"]["syncs_in_progress"] == 0

    def test_detailed_health_flags_stuck_sync(self, client, integration, db_session):
        attempt = sync_engine.claim(db_session, integration.id)
        attempt.started_at = utcnow() - timedelta(hours=3)
        db_session.commit()

        sync = client.get("/health/detailed").json()["checks"]["sync"]

        assert sync["status"] == "degraded"
        assert sync["syncs_in_progress"] == 1
        assert sync["oldest_in_progress_started_at"] is not None
