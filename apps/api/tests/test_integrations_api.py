"""
API tests for /v1/integrations.

Service dependencies are overridden to use the test registry and lock
manager, so no request ever leaves the process.
"""
from unittest.mock import patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from core.config import settings
from main import app
from models import Integration
from routers.integrations import get_health_sync_service
from services.health_providers.errors import ProviderFetchError
from services.health_providers.models import utc_now
from services.health_sync import HealthSyncService
from services.oauth_state import create_oauth_state

from fixtures.provider_fixtures import make_credentials


def auth_headers(user_id):
    token = jwt.encode({"sub": str(user_id)}, settings.SECRET_KEY, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def fresh_credentials():
    """Valid against the real clock."""
    return make_credentials(now=utc_now())


@pytest.fixture
def client(db_session, registry, sync_config, lock_manager):
    app.dependency_overrides[get_health_sync_service] = lambda: HealthSyncService(
        db_session, registry=registry, config=sync_config, lock_manager=lock_manager
    )
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestAuth:
    def test_list_requires_token(self, client):
        response = client.get("/v1/integrations")
        assert response.status_code == 401

    def test_garbage_token_is_rejected(self, client):
        response = client.get("/v1/integrations", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


class TestProviders:
    def test_lists_all_supported_providers(self, client):
        response = client.get("/v1/integrations/providers")
        assert response.status_code == 200
        providers = {p["provider"] for p in response.json()["providers"]}
        assert providers == {"STRAVA", "FITBIT", "LOSE_IT"}


class TestConnectFlow:
    def test_authorize_returns_url_and_state(self, client):
        response = client.get("/v1/integrations/strava/authorize", headers=auth_headers(uuid4()))

        assert response.status_code == 200
        body = response.json()
        assert body["url"].startswith("https://www.strava.com/oauth/authorize?")
        assert body["state"]

    def test_authorize_unknown_provider(self, client):
        response = client.get("/v1/integrations/garmin/authorize", headers=auth_headers(uuid4()))
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_PROVIDER"

    def test_callback_with_tampered_state(self, client):
        state = create_oauth_state(str(uuid4()), "FITBIT") + "x"
        response = client.get("/v1/integrations/fitbit/callback", params={"code": "abc", "state": state})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_OAUTH_STATE"

    def test_callback_creates_integration_without_leaking_tokens(self, client, registry, db_session):
        user_id = uuid4()
        state = create_oauth_state(str(user_id), "FITBIT")

        with patch.object(registry.get("FITBIT"), "exchange_code", return_value=make_credentials()):
            response = client.get("/v1/integrations/fitbit/callback", params={"code": "abc", "state": state})

        assert response.status_code == 201
        body = response.json()
        assert body["provider"] == "FITBIT"
        assert body["status"] == "ACTIVE"
        assert "credentials" not in body
        assert "access-token" not in response.text

        listed = client.get("/v1/integrations", headers=auth_headers(user_id)).json()["integrations"]
        assert [i["id"] for i in listed] == [body["id"]]


class TestSyncAndDisconnect:
    def test_sync_unknown_integration(self, client):
        response = client.post(f"/v1/integrations/{uuid4()}/sync", headers=auth_headers(uuid4()))
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_sync_of_another_users_integration_is_not_found(self, client, make_integration):
        integration = make_integration()
        response = client.post(f"/v1/integrations/{integration.id}/sync", headers=auth_headers(uuid4()))
        assert response.status_code == 404

    def test_provider_failure_is_reported_in_body(self, client, registry, make_integration):
        integration = make_integration(credentials=fresh_credentials())
        error = ProviderFetchError("Fitbit returned 503", provider="FITBIT", status_code=503, retryable=True)

        with patch.object(registry.get("FITBIT"), "fetch_range", side_effect=error):
            response = client.post(
                f"/v1/integrations/{integration.id}/sync",
                headers=auth_headers(integration.user_id),
            )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ERROR"
        assert body["error"] == "Fitbit returned 503"

    def test_successful_sync(self, client, registry, make_integration):
        integration = make_integration(credentials=fresh_credentials())
        with patch.object(registry.get("FITBIT"), "fetch_range", return_value=[]):
            response = client.post(
                f"/v1/integrations/{integration.id}/sync",
                headers=auth_headers(integration.user_id),
            )

        assert response.status_code == 200
        assert response.json()["status"] == "ACTIVE"
        assert response.json()["error"] is None

    def test_disconnect(self, client, make_integration, db_session):
        integration = make_integration(provider="LOSE_IT")
        response = client.delete(
            f"/v1/integrations/{integration.id}",
            headers=auth_headers(integration.user_id),
        )

        assert response.status_code == 204
        db_session.expire_all()
        assert db_session.query(Integration).count() == 0

    def test_sync_all_reports_each_integration(self, client, registry, make_integration):
        user_id = uuid4()
        make_integration(provider="FITBIT", user_id=user_id, credentials=fresh_credentials())
        make_integration(provider="STRAVA", user_id=user_id, credentials=fresh_credentials())
        make_integration(provider="LOSE_IT", user_id=user_id, status="EXPIRED", credentials=fresh_credentials())
        make_integration(provider="FITBIT", credentials=fresh_credentials())
        error = ProviderFetchError("Strava returned 500", provider="STRAVA", status_code=500)

        with patch.object(registry.get("FITBIT"), "fetch_range", return_value=[]) as fitbit_fetch, \
                patch.object(registry.get("STRAVA"), "fetch_range", side_effect=error):
            response = client.post("/v1/integrations/sync-all", headers=auth_headers(user_id))

        assert response.status_code == 200
        body = response.json()
        assert (body["total_synced"], body["total_failed"]) == (1, 1)
        assert {r["provider"]: r["error"] for r in body["results"]} == {
            "FITBIT": None,
            "STRAVA": "Strava returned 500",
        }
        fitbit_fetch.assert_called_once()

    def test_sync_all_requires_token(self, client):
        assert client.post("/v1/integrations/sync-all").status_code == 401
