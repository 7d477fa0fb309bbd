"""Integration tests for the cookie session lifecycle.

Tests the complete flow through the HTTP surface:
- Login via the authorization-code redirect and callback
- Identity on /me from the access-token cookie
- CSRF token retrieval and enforcement
- Logout and replay of the logged-out token
- Refresh with a live and a revoked provider grant
"""

import asyncio
import time
from typing import Optional
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from sessionguard import app as app_module
from sessionguard.service.identity import IdpAuthentication, OidcPrincipal
from sessionguard.service.runtime import get_runtime, reset_runtime_for_tests
from sessionguard.storage.models import IdpGrant

USER_EMAIL = "alice@example.com"


class FakeIdentityProvider:
    """Stands in for the OAuth2 client; no network."""

    registration_id = "cognito"

    def __init__(self):
        self.authorize_result = "same"
        self.authorize_calls = 0

    def authorization_url(self, state: str) -> str:
        return f"https://idp.test/oauth2/authorize?state={state}"

    async def exchange_code(self, code: str) -> Optional[IdpAuthentication]:
        if code != "good-code":
            return None
        return IdpAuthentication(
            principal=OidcPrincipal(
                {"sub": "abc-123", "email": USER_EMAIL, "name": "Alice Example"}
            ),
            grant=IdpGrant(access_token="idp-at", refresh_token="idp-rt"),
        )

    async def authorize(self, grant: IdpGrant) -> Optional[IdpGrant]:
        self.authorize_calls += 1
        if self.authorize_result == "same":
            return grant
        return self.authorize_result


@pytest.fixture
def provider():
    fake = FakeIdentityProvider()
    reset_runtime_for_tests(identity_provider=fake)
    return fake


@pytest.fixture
def client(provider):
    """Create a test client for the API."""
    with TestClient(app_module.app) as test_client:
        yield test_client


def _login(client: TestClient) -> str:
    start = client.get("/oauth2/authorization/cognito", follow_redirects=False)
    assert start.status_code == 302
    state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

    callback = client.get(
        "/login/oauth2/code/cognito",
        params={"code": "good-code", "state": state},
        follow_redirects=False,
    )
    assert callback.status_code == 302
    assert callback.headers["location"] == "/"
    return client.cookies.get("access_token")


def _csrf_header(client: TestClient) -> dict:
    response = client.get("/csrf")
    assert response.status_code == 200
    data = response.json()["data"]
    return {data["headerName"]: data["token"]}


def _session_id(token: str) -> str:
    return get_runtime().codec.verify(token, allow_expired=True).claims.session_id


def _version(session_id: str) -> Optional[int]:
    return asyncio.run(get_runtime().sessions.get_version(session_id))


def _set_cookie_headers(response) -> list:
    return response.headers.get_list("set-cookie")


def _cleared(response, name: str) -> bool:
    return any(
        header.startswith(f"{name}=") and "max-age=0" in header.lower()
        for header in _set_cookie_headers(response)
    )


class TestLoginFlow:
    def test_login_sets_session_cookies(self, client):
        token = _login(client)

        assert token
        assert client.cookies.get("user_info")
        assert client.cookies.get("SESSION")
        assert _version(_session_id(token)) == 1

    def test_me_reports_identity(self, client):
        _login(client)

        response = client.get("/me")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"] == {"name": USER_EMAIL, "roles": []}

    def test_me_is_anonymous_without_cookie(self, client):
        response = client.get("/me")

        assert response.status_code == 200
        assert response.json()["data"] == {"name": None, "roles": []}

    def test_callback_rejects_state_mismatch(self, client):
        client.get("/oauth2/authorization/cognito", follow_redirects=False)

        response = client.get(
            "/login/oauth2/code/cognito",
            params={"code": "good-code", "state": "forged"},
            follow_redirects=False,
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert client.cookies.get("access_token") is None

    def test_callback_rejects_failed_code_exchange(self, client):
        start = client.get("/oauth2/authorization/cognito", follow_redirects=False)
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

        response = client.get(
            "/login/oauth2/code/cognito",
            params={"code": "bad-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 401

    def test_unknown_registration_rejected(self, client):
        response = client.get("/oauth2/authorization/github", follow_redirects=False)

        assert response.status_code == 401


class TestCsrf:
    def test_csrf_endpoint_returns_token_and_cookie(self, client):
        response = client.get("/csrf")

        data = response.json()["data"]
        assert data["headerName"] == "X-XSRF-TOKEN"
        assert data["parameterName"] == "_csrf"
        assert client.cookies.get("XSRF-TOKEN") == data["token"]
        assert response.headers["X-XSRF-TOKEN"] == data["token"]

    def test_csrf_token_is_stable_across_reads(self, client):
        first = client.get("/csrf").json()["data"]["token"]
        second = client.get("/csrf").json()["data"]["token"]

        assert first == second

    def test_post_without_header_is_forbidden(self, client):
        client.get("/csrf")

        response = client.post("/auth/logout")

        assert response.status_code == 403
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "forbidden"
        assert body["error"]["details"] == {"reason": "missing"}
        assert body["error"]["message"] == "missing CSRF token"

    def test_post_with_wrong_header_is_forbidden(self, client):
        client.get("/csrf")

        response = client.post("/auth/logout", headers={"X-XSRF-TOKEN": "nope"})

        assert response.status_code == 403
        assert response.json()["error"]["details"] == {"reason": "invalid"}

    def test_form_field_satisfies_check(self, client):
        token = client.get("/csrf").json()["data"]["token"]

        response = client.post("/auth/logout", data={"_csrf": token})

        assert response.status_code == 204

    def test_safe_requests_keep_existing_cookie_alive(self, client):
        token = client.get("/csrf").json()["data"]["token"]

        response = client.get("/healthz")

        assert any(
            header.startswith(f"XSRF-TOKEN={token}") for header in _set_cookie_headers(response)
        )
        assert response.headers["X-XSRF-TOKEN"] == token


class TestLogout:
    def test_logout_revokes_session_and_clears_cookies(self, client):
        token = _login(client)
        session_id = _session_id(token)

        response = client.post("/auth/logout", headers=_csrf_header(client))

        assert response.status_code == 204
        assert _version(session_id) == 2
        assert _cleared(response, "access_token")
        assert _cleared(response, "user_info")
        assert _cleared(response, "SESSION")
        assert client.cookies.get("access_token") is None

    def test_replayed_token_after_logout_is_rejected(self, client):
        token = _login(client)
        session_id = _session_id(token)
        client.post("/auth/logout", headers=_csrf_header(client))

        response = client.get("/me", headers={"Cookie": f"access_token={token}"})

        assert response.json()["data"]["name"] is None
        assert _cleared(response, "access_token")
        assert _cleared(response, "user_info")
        # the replay itself counts as a session-level failure
        assert _version(session_id) == 3

    def test_logout_without_session_still_succeeds(self, client):
        response = client.post("/auth/logout", headers=_csrf_header(client))

        assert response.status_code == 204
        assert _cleared(response, "access_token")

    def test_logout_for_vanished_session_does_not_recreate_it(self, client):
        token = get_runtime().codec.issue(USER_EMAIL, "sid-lost", 1, 600)
        headers = _csrf_header(client)
        cookie = f"access_token={token}; XSRF-TOKEN={client.cookies.get('XSRF-TOKEN')}"

        response = client.post("/auth/logout", headers={**headers, "Cookie": cookie})

        assert response.status_code == 204
        assert _cleared(response, "access_token")
        assert _version("sid-lost") is None


class TestSessionFailures:
    def test_tampered_cookie_is_cleared_without_revocation(self, client):
        token = _login(client)
        session_id = _session_id(token)
        header, payload, _ = token.split(".")
        tampered = f"{header}.{payload}.{'A' * 43}"

        response = client.get("/me", headers={"Cookie": f"access_token={tampered}"})

        assert response.json()["data"]["name"] is None
        assert _cleared(response, "access_token")
        assert _version(session_id) == 1

    def test_idle_session_is_revoked(self, client):
        token = _login(client)
        session_id = _session_id(token)
        idle = get_runtime().settings.idle_timeout.total_seconds()
        get_runtime().sessions.set_last_seen(session_id, int(time.time() - idle - 30))

        response = client.get("/me")

        assert response.json()["data"]["name"] is None
        assert _cleared(response, "access_token")
        assert _version(session_id) == 2

    def test_vanished_session_is_not_resurrected(self, client):
        token = get_runtime().codec.issue(USER_EMAIL, "sid-lost", 1, 600)
        cookie = {"Cookie": f"access_token={token}"}

        first = client.get("/me", headers=cookie)
        second = client.get("/me", headers=cookie)

        assert first.json()["data"]["name"] is None
        assert _cleared(first, "access_token")
        assert second.json()["data"]["name"] is None
        assert _version("sid-lost") is None


class TestRefresh:
    def test_refresh_reissues_access_cookie(self, client, provider):
        token = _login(client)
        headers = _csrf_header(client)
        client.cookies.delete("access_token")

        response = client.post("/auth/refresh", headers=headers)

        assert response.status_code == 204
        assert provider.authorize_calls == 1
        refreshed = client.cookies.get("access_token")
        assert refreshed
        assert _session_id(refreshed) == _session_id(token)
        assert client.cookies.get("user_info")

    def test_refresh_ignores_broken_access_cookie(self, client):
        _login(client)
        headers = _csrf_header(client)
        cookie = "; ".join(
            [
                "access_token=garbage",
                f"SESSION={client.cookies.get('SESSION')}",
                f"XSRF-TOKEN={client.cookies.get('XSRF-TOKEN')}",
            ]
        )

        response = client.post("/auth/refresh", headers={**headers, "Cookie": cookie})

        assert response.status_code == 204
        assert not _cleared(response, "access_token")

    def test_refresh_with_revoked_grant_is_unauthorized(self, client, provider):
        token = _login(client)
        session_id = _session_id(token)
        headers = _csrf_header(client)
        provider.authorize_result = None

        response = client.post("/auth/refresh", headers=headers)

        assert response.status_code == 401
        assert response.content == b""
        assert _cleared(response, "access_token")
        assert _cleared(response, "user_info")
        assert _version(session_id) == 1

    def test_refresh_succeeds_again_once_idp_recovers(self, client, provider):
        token = _login(client)
        session_id = _session_id(token)
        headers = _csrf_header(client)
        provider.authorize_result = None

        denied = client.post("/auth/refresh", headers=headers)
        assert denied.status_code == 401
        assert _version(session_id) == 1
        assert client.cookies.get("access_token") is None

        provider.authorize_result = "same"
        retried = client.post("/auth/refresh", headers=headers)

        assert retried.status_code == 204
        refreshed = client.cookies.get("access_token")
        assert refreshed
        assert refreshed != token
        assert _session_id(refreshed) == session_id
        assert provider.authorize_calls == 2

    def test_refresh_after_logout_is_unauthorized(self, client, provider):
        _login(client)
        headers = _csrf_header(client)
        client.post("/auth/logout", headers=headers)

        response = client.post("/auth/refresh", headers=headers)

        assert response.status_code == 401
        assert provider.authorize_calls == 0

    def test_refresh_requires_csrf(self, client):
        _login(client)

        response = client.post("/auth/refresh")

        assert response.status_code == 403
