"""API endpoint tests"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from socialbridge.core.config import GRAPH_API_BASE, settings
from socialbridge.core.security import provider_for_path
from socialbridge.providers.metadata import GMAIL_PROFILE_URL
from socialbridge.providers.resources import GMAIL_MESSAGES_URL
from socialbridge.services.credential_store import ProviderCredential
from conftest import TEST_PASSWORD

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


def _gmail_routes(provider_api):
    provider_api.add("POST", GOOGLE_TOKEN_URL, json={
        "access_token": "ya29.access", "refresh_token": "1//refresh", "expires_in": 3599
    })
    provider_api.add("GET", GMAIL_PROFILE_URL, json={"emailAddress": "alice@gmail.com"})


def _start(client, provider="gmail") -> str:
    response = client.get(f"/api/auth/{provider}/login")
    assert response.status_code == 200
    return parse_qs(urlparse(response.json()["authUrl"]).query)["state"][0]


def _connect_gmail(services, user_id, expires_at=None, refresh_token="1//refresh"):
    services.store.upsert(ProviderCredential(
        user_id=user_id,
        provider="gmail",
        access_token="ya29.stored",
        refresh_token=refresh_token,
        access_token_expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=1),
        account_ids={"email_address": "alice@gmail.com"},
    ))


@pytest.mark.critical
class TestUserAuth:

    def test_first_user_is_admin(self, client):
        first = client.post("/api/auth/register", json={"email": "first@example.com", "password": TEST_PASSWORD})
        second = client.post("/api/auth/register", json={"email": "second@example.com", "password": TEST_PASSWORD})

        assert first.status_code == 201
        assert first.json()["user"]["role"] == "ADMIN"
        assert second.json()["user"]["role"] == "USER"

    def test_duplicate_registration_rejected(self, client, test_user):
        response = client.post("/api/auth/register", json={"email": test_user.email, "password": TEST_PASSWORD})
        assert response.status_code == 400

    def test_short_password_rejected(self, client):
        response = client.post("/api/auth/register", json={"email": "x@example.com", "password": "short"})
        assert response.status_code == 422

    def test_login_with_invalid_credentials(self, client, test_user):
        response = client.post("/api/auth/login", json={"email": test_user.email, "password": "wrong-password"})
        assert response.status_code == 401

    def test_login_sets_cookie_and_me(self, client, test_user):
        response = client.post("/api/auth/login", json={"email": test_user.email, "password": TEST_PASSWORD})

        assert response.status_code == 200
        assert "session_id" in response.cookies
        assert client.get("/api/auth/me").json()["user"]["email"] == test_user.email

    def test_me_without_session(self, client):
        assert client.get("/api/auth/me").json() == {"user": None}

    def test_bearer_session_token(self, client, test_user):
        token = client.post(
            "/api/auth/login", json={"email": test_user.email, "password": TEST_PASSWORD}
        ).json()["session_token"]
        client.cookies.clear()

        response = client.get("/api/auth/connections", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_logout_invalidates_session(self, authenticated_client, mock_redis):
        assert authenticated_client.post("/api/auth/logout").status_code == 200
        assert not list(mock_redis.scan_iter("session:*"))

    def test_protected_endpoint_requires_auth(self, client):
        response = client.get("/api/auth/gmail/login")

        assert response.status_code == 401
        assert response.json()["error"] == "NOT_AUTHENTICATED"

    def test_delete_account_removes_credentials(self, authenticated_client, services, test_user):
        _connect_gmail(services, test_user.id)

        assert authenticated_client.delete("/api/auth/account").status_code == 200
        assert services.store.get(test_user.id, "gmail") is None


@pytest.mark.critical
class TestConnectFlowRoutes:

    def test_login_returns_auth_url(self, authenticated_client):
        response = authenticated_client.get("/api/auth/gmail/login")

        assert response.status_code == 200
        assert response.json()["authUrl"].startswith("https://accounts.google.com/o/oauth2/v2/auth?")

    def test_callback_redirects_to_frontend(self, authenticated_client, provider_api, services, test_user):
        _gmail_routes(provider_api)
        state = _start(authenticated_client)

        response = authenticated_client.get(
            "/api/auth/gmail/callback", params={"code": "c", "state": state}, follow_redirects=False
        )

        assert response.status_code in (302, 307)
        location = urlparse(response.headers["location"])
        assert location.path == "/integrations"
        assert parse_qs(location.query) == {"provider": ["gmail"], "status": ["connected"]}
        assert services.store.get(test_user.id, "gmail").access_token == "ya29.access"

    def test_callback_json_result(self, authenticated_client, provider_api):
        _gmail_routes(provider_api)
        state = _start(authenticated_client)

        response = authenticated_client.get(
            "/api/auth/gmail/callback", params={"code": "c", "state": state, "format": "json"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "connected"
        assert body["account_ids"] == {"email_address": "alice@gmail.com"}
        assert "ya29.access" not in response.text

    def test_invalid_state_json(self, client, provider_api):
        response = client.get(
            "/api/auth/gmail/callback",
            params={"code": "c", "state": "forged"},
            headers={"Accept": "application/json"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_STATE"
        assert provider_api.calls == []

    def test_invalid_state_redirect_carries_code(self, client):
        response = client.get(
            "/api/auth/gmail/callback", params={"code": "c", "state": "forged"}, follow_redirects=False
        )

        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["status"] == ["error"]
        assert query["code"] == ["INVALID_STATE"]

    def test_provider_denied(self, authenticated_client, provider_api, services, test_user):
        state = _start(authenticated_client)

        response = authenticated_client.get(
            "/api/auth/gmail/callback",
            params={"state": state, "error": "access_denied", "error_description": "User cancelled", "format": "json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "PROVIDER_DENIED"
        assert response.json()["message"] == "User cancelled"
        assert services.store.get(test_user.id, "gmail") is None

    def test_callback_attributes_to_state_owner(self, client, provider_api, services, test_user, test_user_2,
                                                login_as):
        _gmail_routes(provider_api)
        login_as(test_user)
        state = _start(client)

        # Someone else's browser session completes the callback
        login_as(test_user_2)
        response = client.get("/api/auth/gmail/callback", params={"code": "c", "state": state, "format": "json"})

        assert response.status_code == 200
        assert services.store.get(test_user.id, "gmail") is not None
        assert services.store.get(test_user_2.id, "gmail") is None

    def test_unknown_provider(self, authenticated_client):
        response = authenticated_client.get("/api/auth/myspace/login")

        assert response.status_code == 404
        assert response.json()["error"] == "UNKNOWN_PROVIDER"

    def test_unconfigured_provider(self, authenticated_client, services):
        with patch.object(services.providers["tiktok"], "client_secret", ""):
            response = authenticated_client.get("/api/auth/tiktok/login")

        assert response.status_code == 503
        assert response.json()["error"] == "PROVIDER_NOT_CONFIGURED"

    def test_callbacks_are_not_rate_limited(self, client):
        with patch.object(settings, "RATE_LIMIT_REQUESTS", 1):
            statuses = [
                client.get("/api/auth/gmail/callback", params={"state": "x", "format": "json"}).status_code
                for _ in range(3)
            ]
        assert statuses == [401, 401, 401]


@pytest.mark.high
class TestConnectionsRoutes:

    def test_connections_never_include_tokens(self, authenticated_client, services, test_user):
        _connect_gmail(services, test_user.id)

        response = authenticated_client.get("/api/auth/connections")

        assert response.status_code == 200
        connections = {c["provider"]: c for c in response.json()["connections"]}
        assert set(connections) == {"facebook", "instagram", "tiktok", "gmail", "whatsapp"}
        assert connections["gmail"]["connected"] is True
        assert connections["gmail"]["has_refresh_token"] is True
        assert connections["tiktok"]["connected"] is False
        assert "ya29.stored" not in response.text
        assert "1//refresh" not in response.text

    def test_disconnect(self, authenticated_client, services, test_user):
        _connect_gmail(services, test_user.id)

        response = authenticated_client.post("/api/auth/gmail/disconnect")

        assert response.json() == {"provider": "gmail", "disconnected": True}
        assert services.store.get(test_user.id, "gmail") is None


@pytest.mark.critical
class TestAccessGate:

    def test_requires_session(self, client):
        response = client.get("/api/gmail/messages")

        assert response.status_code == 401
        assert response.json()["error"] == "NOT_AUTHENTICATED"

    def test_not_connected(self, authenticated_client):
        response = authenticated_client.get("/api/gmail/messages")

        assert response.status_code == 401
        assert response.json()["error"] == "NOT_CONNECTED"
        assert response.json()["connect_url"] == "/api/auth/gmail/login"

    def test_valid_credential_passes_through(self, authenticated_client, provider_api, services, test_user):
        _connect_gmail(services, test_user.id)
        provider_api.add("GET", GMAIL_MESSAGES_URL, json={"messages": [{"id": "m1"}]})

        response = authenticated_client.get("/api/gmail/messages", params={"limit": 5})

        assert response.status_code == 200
        assert response.json() == {"messages": [{"id": "m1"}]}
        request = provider_api.calls_to("GET", GMAIL_MESSAGES_URL)[0]
        assert request.headers["Authorization"] == "Bearer ya29.stored"
        assert request.url.params["maxResults"] == "5"

    def test_expired_credential_refreshed_first(self, authenticated_client, provider_api, services, test_user):
        _connect_gmail(services, test_user.id, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        provider_api.add("POST", GOOGLE_TOKEN_URL, json={"access_token": "ya29.refreshed", "expires_in": 3599})
        provider_api.add("GET", GMAIL_MESSAGES_URL, json={"messages": []})

        response = authenticated_client.get("/api/gmail/messages")

        assert response.status_code == 200
        request = provider_api.calls_to("GET", GMAIL_MESSAGES_URL)[0]
        assert request.headers["Authorization"] == "Bearer ya29.refreshed"

    def test_refresh_failure_requires_reauth(self, authenticated_client, provider_api, services, test_user):
        _connect_gmail(services, test_user.id, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        provider_api.add("POST", GOOGLE_TOKEN_URL, status=400, json={"error": "invalid_grant"})

        response = authenticated_client.get("/api/gmail/messages")

        assert response.status_code == 401
        assert response.json()["error"] == "REAUTH_REQUIRED"
        assert services.store.get(test_user.id, "gmail") is not None

    def test_missing_account_id(self, authenticated_client, services, test_user):
        services.store.upsert(ProviderCredential(
            user_id=test_user.id, provider="facebook", access_token="EAAG-long",
            access_token_expires_at=datetime.now(timezone.utc) + timedelta(days=30),
        ))

        response = authenticated_client.get("/api/facebook/campaigns")

        assert response.status_code == 409
        assert response.json()["error"] == "ACCOUNT_NOT_RESOLVED"

    def test_facebook_campaigns(self, authenticated_client, provider_api, services, test_user):
        services.store.upsert(ProviderCredential(
            user_id=test_user.id, provider="facebook", access_token="EAAG-long",
            access_token_expires_at=datetime.now(timezone.utc) + timedelta(days=30),
            account_ids={"ad_account_id": "act_1"},
        ))
        provider_api.add("GET", f"{GRAPH_API_BASE}/act_1/campaigns", json={"data": [{"id": "c1"}]})

        response = authenticated_client.get("/api/facebook/campaigns")

        assert response.status_code == 200
        assert response.json()["data"] == [{"id": "c1"}]

    def test_upstream_error_is_502(self, authenticated_client, provider_api, services, test_user):
        _connect_gmail(services, test_user.id)
        provider_api.add("GET", GMAIL_MESSAGES_URL, status=500, json={"error": {"message": "backend"}})

        response = authenticated_client.get("/api/gmail/messages")

        assert response.status_code == 502
        assert response.json()["error"] == "PROVIDER_API_ERROR"


@pytest.mark.medium
class TestOperationalEndpoints:

    def test_health(self, client, services):
        with patch.object(services.providers["whatsapp"], "client_id", ""):
            body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["providers"]["gmail"] is True
        assert body["providers"]["whatsapp"] is False

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "socialbridge_oauth_flows_total" in response.text

    def test_rate_limit(self, client):
        with patch.object(settings, "RATE_LIMIT_REQUESTS", 2):
            responses = [client.get("/api/auth/me") for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 429]
        assert responses[2].json()["error"] == "RATE_LIMITED"
        assert responses[2].headers["Retry-After"] == str(settings.RATE_LIMIT_WINDOW)

    def test_provider_for_path(self):
        assert provider_for_path("/api/auth/tiktok/callback") == "tiktok"
        assert provider_for_path("/api/gmail/messages") == "gmail"
        assert provider_for_path("/api/auth/connections") is None
        assert provider_for_path("/health") is None
