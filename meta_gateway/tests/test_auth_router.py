"""Integration tests for the /auth router and /health.

WHAT:
    Drives the OAuth login flow end to end through FastAPI's TestClient,
    with the Graph API mocked and sessions held in the in-memory store.

WHY:
    The session token issued at /auth/callback is the only credential tool
    callers hold; these tests pin how it is issued, accepted and revoked.

REFERENCES:
    - meta_gateway/routers/auth.py
    - meta_gateway/deps.py
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from meta_gateway import config, deps, state
from meta_gateway.main import create_app
from meta_gateway.services.rate_limiter import RateLimiter


def graph(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/me"):
        return httpx.Response(200, json={"id": "777", "name": "Dana", "email": "dana@example.com"})
    return httpx.Response(200, json={"access_token": "EAABlonglived", "expires_in": 5184000})


@pytest.fixture
def auth_manager(make_user_auth_manager):
    return make_user_auth_manager(graph)


@pytest.fixture
def client(auth_manager, settings):
    app = create_app()
    app.dependency_overrides[deps.get_user_auth_manager] = lambda: auth_manager
    app.dependency_overrides[config.get_settings] = lambda: settings
    state.set_rate_limiter(RateLimiter("development"))
    yield TestClient(app)
    state.reset()


def login_flow(client: TestClient) -> str:
    state_value = client.cookies.get("oauth_state")
    if state_value is None:
        client.get("/auth/login")
        state_value = client.cookies.get("oauth_state")
    response = client.get("/auth/callback", params={"code": "code-1", "state": state_value})
    assert response.status_code == 200, response.text
    return response.json()["session_token"]


class TestLogin:
    def test_returns_url_and_sets_state_cookie(self, client):
        response = client.get("/auth/login")

        assert response.status_code == 200
        state_value = client.cookies.get("oauth_state")
        assert state_value and len(state_value) == 64
        query = parse_qs(urlparse(response.json()["auth_url"]).query)
        assert query["state"] == [state_value]
        assert query["client_id"] == ["app123"]


class TestCallback:
    def test_provider_error(self, client):
        response = client.get("/auth/callback", params={"error": "access_denied"})
        assert response.status_code == 400

    def test_missing_code(self, client):
        client.get("/auth/login")
        response = client.get("/auth/callback", params={"state": client.cookies.get("oauth_state")})
        assert response.status_code == 400

    def test_state_mismatch(self, client, auth_manager):
        """WHAT: A callback whose state differs from the cookie is rejected before any exchange.
        WHY: CSRF protection for the login flow.
        """
        client.get("/auth/login")

        response = client.get("/auth/callback", params={"code": "code-1", "state": "forged"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid OAuth state"
        assert auth_manager.recorder.requests == []

    def test_full_flow_issues_session(self, client, auth_manager):
        session_token = login_flow(client)

        assert client.cookies.get("session_token") == session_token
        assert client.cookies.get("oauth_state") is None

    def test_token_exchange_failure(self, make_user_auth_manager, settings):
        failing = make_user_auth_manager(lambda request: httpx.Response(400, json={"error": {"message": "bad code", "code": 100}}))
        app = create_app()
        app.dependency_overrides[deps.get_user_auth_manager] = lambda: failing
        app.dependency_overrides[config.get_settings] = lambda: settings
        client = TestClient(app)

        client.get("/auth/login")
        response = client.get("/auth/callback", params={"code": "bad", "state": client.cookies.get("oauth_state")})

        assert response.status_code == 502


class TestSessionEndpoints:
    def test_profile_with_bearer(self, client, settings, auth_manager):
        session_token = login_flow(client)
        client.cookies.clear()

        response = client.get("/auth/profile", headers={"Authorization": f"Bearer {session_token}"})

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["id"] == "meta_777"
        assert body["user"]["email"] == "dana@example.com"
        assert body["token_status"]["has_token"] is True

    def test_profile_with_cookie(self, client):
        login_flow(client)
        assert client.get("/auth/profile").status_code == 200

    def test_profile_requires_auth(self, client):
        response = client.get("/auth/profile")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_garbage_token(self, client):
        response = client.get("/auth/profile", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_logout_revokes_session(self, client, auth_manager):
        session_token = login_flow(client)
        headers = {"Authorization": f"Bearer {session_token}"}

        assert client.post("/auth/logout", headers=headers).status_code == 200

        assert client.get("/auth/profile", headers=headers).status_code == 401

    def test_refresh(self, client):
        session_token = login_flow(client)

        response = client.post("/auth/refresh", headers={"Authorization": f"Bearer {session_token}"})

        assert response.status_code == 200
        assert response.json()["message"] == "Token refreshed successfully"


class TestHealth:
    def test_reports_tier(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["tier"] == "development"
