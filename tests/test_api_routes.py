"""
tests/test_api_routes.py -- Integration tests for the auth and users API routes.

These tests exercise the full stack: FastAPI routing -> exception handlers ->
auth dependency injection -> workflow services -> CredentialStore -> response
model serialization.

Coverage:
  - Login: success sets cookie, failures return the generic error envelope with no-store
  - Registration: success, welcome notification attempted, failing notifier
    still answers success, weak/duplicate/non-government rejected
  - Forgot / check-token / reset: unknown email answers success without a token
  - Profile: update, forbidden characters, other user's record
  - Session: /me, logout, unauthenticated 401
  - Federated routes answer not_authorized when no provider is configured
  - Federated callback with a canned provider response: staging redirect,
    link sets the session cookie, expired and tampered states, provider errors

Fixtures used (from conftest.py):
  - api_client: (client, token, uid) -- TestClient with a JWT for the seeded
    user alice.smith@agency.gov / Tr1cky!Harbor
"""

from __future__ import annotations

from dataclasses import replace

import pytest
from authlib.integrations.base_client import OAuthError
from fastapi.testclient import TestClient

from auth.models import ACTION_LINK, ACTION_LOGIN, LinkState, User
from auth.resolver import IdentityResolver
from auth.tokens import encode_link_state, hash_password

GOV_USER = "alice.smith@agency.gov"
STRONG_PASSWORD = "Tr1cky!Harbor"
NEW_PASSWORD = "Qu1et#Meadow"


def register_payload(username: str, **overrides) -> dict:
    payload = {"username": username, "password": STRONG_PASSWORD, "name": "Test User", "title": "Analyst", "tags": ["python"]}
    payload.update(overrides)
    return payload


@pytest.fixture(autouse=True)
def _fresh_cookies(api_client):
    """Each test starts unauthenticated unless it sends a token explicitly."""
    client, _token, _uid = api_client
    client.cookies.clear()
    yield


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_login_success_sets_cookie(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"username": GOV_USER, "password": STRONG_PASSWORD})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["username"] == GOV_USER
        assert data["token_type"] == "bearer"
        assert "access_token" in resp.cookies
        assert resp.headers["Cache-Control"] == "no-store"

    def test_login_wrong_password(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"username": GOV_USER, "password": "Wr0ng!Password"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_unknown_user_gets_the_same_message(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        known = client.post("/api/v1/auth/login", json={"username": GOV_USER, "password": "Wr0ng!Password"})
        unknown = client.post(
            "/api/v1/auth/login", json={"username": "ghost@agency.gov", "password": "Wr0ng!Password"}
        )
        assert unknown.status_code == known.status_code == 401
        assert unknown.json() == known.json()

    def test_login_non_government_domain(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "alice@example.com", "password": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_domain"

    def test_login_missing_field_is_validation_error(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"username": GOV_USER})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRegister:
    def test_register_and_welcome(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        notifier = client.app.state.notifier
        resp = client.post("/api/v1/auth/register", json=register_payload("reg.one@agency.gov", isAdmin=True))
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"success": True}

        user = client.app.state.store.find_user_by_username("reg.one@agency.gov")
        assert user is not None
        assert user.is_admin is False
        assert [entry[1] for entry in notifier.of_kind("welcome")][-1] == "reg.one@agency.gov"

    def test_failing_notifier_does_not_fail_registration(
        self, api_client: tuple[TestClient, str, int], make_notifier
    ) -> None:
        client, _token, _uid = api_client
        original = client.app.state.notifier
        failing = make_notifier(fail=True)
        client.app.state.notifier = failing
        try:
            resp = client.post("/api/v1/auth/register", json=register_payload("reg.two@agency.gov"))
        finally:
            client.app.state.notifier = original
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        assert len(failing.of_kind("welcome")) == 1
        assert client.app.state.store.find_user_by_username("reg.two@agency.gov") is not None

    def test_register_weak_password(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post(
            "/api/v1/auth/register", json=register_payload("reg.weak@agency.gov", password="password")
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"
        assert client.app.state.store.find_user_by_username("reg.weak@agency.gov") is None

    def test_register_duplicate(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/register", json=register_payload(GOV_USER.upper()))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_username"

    def test_register_password_over_bcrypt_limit(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post(
            "/api/v1/auth/register", json=register_payload("reg.long@agency.gov", password="Aa1!" + "x" * 96)
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"
        assert client.app.state.store.find_user_by_username("reg.long@agency.gov") is None

    def test_register_non_government(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/register", json=register_payload("someone@example.com"))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_domain"

    def test_register_markup_in_title(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post(
            "/api/v1/auth/register", json=register_payload("reg.markup@agency.gov", title="<b>Boss</b>")
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == {
            "code": "invalid_field",
            "message": "One or more fields are missing or contain invalid characters.",
            "field": "title",
        }


class TestPasswordReset:
    def test_forgot_unknown_email_answers_success(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        notifier = client.app.state.notifier
        before = len(notifier.of_kind("password_reset"))
        resp = client.post("/api/v1/auth/forgot", json={"username": "ghost@agency.gov"})
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        assert len(notifier.of_kind("password_reset")) == before

    def test_full_reset_flow(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        notifier = client.app.state.notifier
        client.post("/api/v1/auth/register", json=register_payload("reset.me@agency.gov"))

        resp = client.post("/api/v1/auth/forgot", json={"username": "Reset.Me@agency.gov"})
        assert resp.json() == {"success": True}
        _kind, email, token = notifier.of_kind("password_reset")[-1]
        assert email == "reset.me@agency.gov"

        check = client.get(f"/api/v1/auth/check-token/{token.value}")
        assert check.status_code == 200
        assert check.json()["email"] == "reset.me@agency.gov"

        weak = client.post("/api/v1/auth/reset", json={"token": token.value, "password": "resetme"})
        assert weak.status_code == 400
        assert weak.json()["error"]["code"] == "weak_password"

        done = client.post("/api/v1/auth/reset", json={"token": token.value, "password": NEW_PASSWORD})
        assert done.status_code == 200
        assert done.json() == {"success": True}

        replay = client.post("/api/v1/auth/reset", json={"token": token.value, "password": NEW_PASSWORD})
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "token_not_found"

        login = client.post("/api/v1/auth/login", json={"username": "reset.me@agency.gov", "password": NEW_PASSWORD})
        assert login.status_code == 200

    def test_check_unknown_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/check-token/" + "0" * 40)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "token_not_found"


class TestProfile:
    def test_update_own_profile(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, uid = api_client
        body = {"username": GOV_USER, "name": "Alice S.", "title": "Engineer", "tags": ["ops", "python"]}
        resp = client.put(f"/api/v1/users/{uid}", json=body, headers=_auth(token))
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["name"] == "Alice S."
        assert data["tags"] == ["ops", "python"]
        assert data["is_admin"] is False

    def test_markup_rejected_and_not_persisted(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, uid = api_client
        before = client.app.state.store.find_user_by_id(uid)
        body = {"username": GOV_USER, "name": "<script>alert(1)</script>", "tags": []}
        resp = client.put(f"/api/v1/users/{uid}", json=body, headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "name"
        after = client.app.state.store.find_user_by_id(uid)
        assert after.name == before.name
        assert after.tags == before.tags

    def test_other_users_record_is_forbidden(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        client.post("/api/v1/auth/register", json=register_payload("someone.else@agency.gov"))
        other = client.app.state.store.find_user_by_username("someone.else@agency.gov")
        resp = client.put(
            f"/api/v1/users/{other.id}", json={"username": other.username, "name": "Hijacked"}, headers=_auth(token)
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "not_authorized"

    def test_update_requires_auth(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, uid = api_client
        resp = client.put(f"/api/v1/users/{uid}", json={"username": GOV_USER})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_change_password_weak(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, uid = api_client
        resp = client.put(f"/api/v1/users/{uid}/password", json={"password": "alice"}, headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"


class TestSession:
    def test_me(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, uid = api_client
        resp = client.get("/api/v1/auth/me", headers=_auth(token))
        assert resp.status_code == 200
        assert resp.json()["id"] == uid
        assert resp.json()["username"] == GOV_USER
        assert resp.json()["federated"] is False

    def test_me_unauthenticated(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401

    def test_logout_clears_cookie(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        client.post("/api/v1/auth/login", json={"username": GOV_USER, "password": STRONG_PASSWORD})
        assert client.get("/api/v1/auth/me").status_code == 200
        resp = client.get("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        assert client.get("/api/v1/auth/me").status_code == 401


class TestFederatedRoutes:
    def test_oidc_without_provider_is_not_authorized(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/oidc", follow_redirects=False)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "not_authorized"

    def test_find_profile_with_unknown_staging(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/find", json={"id": "missing", "h": "0" * 32, "email": GOV_USER})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "link_expired"


class _CannedProvider:
    """Stands in for the registered authlib client: the token response is fixed."""

    def __init__(self, userinfo: dict | None = None, error: Exception | None = None) -> None:
        self.userinfo = userinfo
        self.error = error

    async def authorize_access_token(self, request) -> dict:
        if self.error is not None:
            raise self.error
        return {"userinfo": self.userinfo}


class _CannedRegistry:
    def __init__(self, provider: _CannedProvider) -> None:
        self.provider = provider

    def create_client(self, name: str) -> _CannedProvider:
        return self.provider


class TestFederatedCallback:
    @pytest.fixture
    def callback(self, api_client: tuple[TestClient, str, int], monkeypatch):
        """Turn federated login on and return a helper that drives the callback for one subject."""
        client, _token, _uid = api_client
        state = client.app.state
        config = replace(state.resolver.config, federated_login_enabled=True)
        monkeypatch.setattr(state, "resolver", IdentityResolver(state.store, state.tokens, config))

        def _call(link_state: str, subject: str | None = None, userinfo: dict | None = None, error=None):
            info = userinfo if userinfo is not None else {"sub": subject}
            monkeypatch.setattr(state, "oauth", _CannedRegistry(_CannedProvider(info, error)))
            return client.get("/api/v1/auth/oidc/callback", params={"state": link_state}, follow_redirects=False)

        return _call

    def test_unknown_subject_is_sent_to_find_profile(self, api_client, callback) -> None:
        client, _token, _uid = api_client
        resp = callback(encode_link_state(LinkState(action=ACTION_LOGIN, redirect="/dashboard")), "fed-new-1")
        assert resp.status_code == 302
        staging = client.app.state.store.find_staging_by_subject("fed-new-1")
        assert resp.headers["location"] == f"/profile/find?id={staging.linked_id}&h={staging.hash}"
        assert "access_token" not in resp.cookies

    def test_link_sets_cookie_then_login_goes_home(self, api_client, callback) -> None:
        client, _token, _uid = api_client
        store = client.app.state.store
        store.insert_user(User(username="fed.link@agency.gov"), hash_password(STRONG_PASSWORD))
        callback(encode_link_state(LinkState(action=ACTION_LOGIN)), "fed-link-1")
        staging = store.find_staging_by_subject("fed-link-1")
        token = client.app.state.accounts.send_find_profile_confirmation(
            staging.linked_id, staging.hash, "fed.link@agency.gov"
        )

        linked = callback(
            encode_link_state(LinkState(action=ACTION_LINK, redirect="/profile/edit", data={"h": token.value})),
            "fed-link-1",
        )
        assert linked.status_code == 302
        assert linked.headers["location"] == "/profile/edit"
        assert "access_token" in linked.cookies
        assert store.find_user_by_subject("fed-link-1").username == "fed.link@agency.gov"

        client.cookies.clear()
        again = callback(encode_link_state(LinkState(action=ACTION_LOGIN)), "fed-link-1")
        assert again.headers["location"] == "/home"
        assert "access_token" in again.cookies

        replay = callback(encode_link_state(LinkState(action=ACTION_LINK, data={"h": token.value})), "fed-link-1")
        assert replay.headers["location"] == "/expired"

    def test_unknown_link_token_is_expired(self, callback) -> None:
        resp = callback(encode_link_state(LinkState(action=ACTION_LINK, data={"h": "f" * 40})), "fed-new-2")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/expired"
        assert "access_token" not in resp.cookies

    def test_tampered_state_is_unauthorized(self, callback) -> None:
        header, payload, signature = encode_link_state(LinkState(action=ACTION_LOGIN)).split(".")
        forged = ".".join([header, payload, signature[::-1]])
        resp = callback(forged, "fed-new-3")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/unauthorized"

    def test_unverified_email_fails_the_login(self, callback) -> None:
        userinfo = {"sub": "fed-new-4", "email": "x@agency.gov", "email_verified": False}
        resp = callback(encode_link_state(LinkState(action=ACTION_LOGIN)), userinfo=userinfo)
        assert resp.headers["location"] == "/login?error=oauth_failed"

    def test_provider_error_fails_the_login(self, callback) -> None:
        resp = callback(encode_link_state(LinkState(action=ACTION_LOGIN)), "fed-new-5", error=OAuthError("denied"))
        assert resp.headers["location"] == "/login?error=oauth_failed"

    def test_disabled_provider_is_unauthorized(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        state = encode_link_state(LinkState(action=ACTION_LOGIN))
        resp = client.get("/api/v1/auth/oidc/callback", params={"state": state}, follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/unauthorized"
