"""
tests/test_auth_flow.py -- Integration tests for login, register and verify.

Exercises the full stack: FastAPI routing -> AuthService -> UserStore /
ExpiringStore -> cookie binding -> response model serialization.

Coverage:
  - /auth/login sets only the access cookie; /auth/login/v2 sets both
  - remember-me switches the refresh cookie between 7 days and 24 hours
  - unknown email, wrong password and inactive account share one error body
  - progressive lockout: the attempt after the threshold is 429 + Retry-After
  - /auth/register: 201 + session, 409 on duplicate email, 400 on weak password
  - /auth/verify with cookie, bearer header, garbage token and no session
  - every token-bearing response carries Cache-Control: no-store

Fixtures used (from conftest.py):
  - api_env: TestClient + stores + recording mail transport (module-scoped)
  - client:  the api_env client with an empty cookie jar
"""

from __future__ import annotations

from auth.cookies import DEFAULT_REFRESH_SECONDS, REMEMBER_ME_SECONDS
from auth.models import Role
from auth.tokens import decode_access_token

from conftest import STRONG_PASSWORD, cookie_header, create_user, set_cookies


def _login(client, email, password=STRONG_PASSWORD, path="/api/v1/auth/login", **extra):
    return client.post(path, json={"email": email, "password": password, **extra})


class TestLogin:
    def test_login_sets_access_cookie_only(self, api_env, client) -> None:
        create_user(api_env.user_store, "login-v1@example.com", name="Vee One")
        resp = _login(client, "login-v1@example.com")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "Bearer"
        assert data["email"] == "login-v1@example.com"
        assert data["name"] == "Vee One"
        assert data["role"] == "viewer"
        assert "refresh_token" not in data
        assert data["mfa_required"] is False

        cookies = set_cookies(resp)
        assert set(cookies) == {"access_token"}
        access = cookies["access_token"]
        assert access.value == data["access_token"]
        assert access["path"] == "/api"
        assert access["httponly"]
        assert access["secure"]
        assert access["samesite"].lower() == "strict"

    def test_login_email_is_case_insensitive(self, api_env, client) -> None:
        create_user(api_env.user_store, "mixed-case@example.com")
        resp = _login(client, "  Mixed-Case@Example.COM ")
        assert resp.status_code == 200, resp.text

    def test_login_v2_issues_pair(self, api_env, client) -> None:
        create_user(api_env.user_store, "login-v2@example.com")
        resp = _login(client, "login-v2@example.com", path="/api/v1/auth/login/v2")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["access_token"] and data["refresh_token"]
        assert data["expires_in"] > 0

        cookies = set_cookies(resp)
        refresh = cookies["refresh_token"]
        assert refresh.value == data["refresh_token"]
        assert refresh["path"] == "/api/v1/auth"
        assert refresh["httponly"]
        assert int(refresh["max-age"]) == DEFAULT_REFRESH_SECONDS

    def test_login_v2_remember_me_extends_refresh_cookie(self, api_env, client) -> None:
        create_user(api_env.user_store, "remember@example.com")
        resp = _login(client, "remember@example.com", path="/api/v1/auth/login/v2", rememberMe=True)
        assert resp.status_code == 200, resp.text
        assert int(set_cookies(resp)["refresh_token"]["max-age"]) == REMEMBER_ME_SECONDS

    def test_access_token_claims(self, api_env, client) -> None:
        uid = create_user(api_env.user_store, "claims@example.com", role=Role.EDITOR)
        token = _login(client, "claims@example.com").json()["access_token"]
        payload = decode_access_token(token)
        assert payload is not None
        assert payload["user_id"] == uid
        assert payload["sub"] == "claims@example.com"
        assert payload["role"] == "editor"
        assert payload["typ"] == "access"

    def test_login_response_not_cacheable(self, api_env, client) -> None:
        create_user(api_env.user_store, "nostore@example.com")
        resp = _login(client, "nostore@example.com")
        assert resp.headers["cache-control"] == "no-store"

    def test_last_login_recorded(self, api_env, client) -> None:
        uid = create_user(api_env.user_store, "lastlogin@example.com")
        assert api_env.user_store.get_by_id(uid).last_login is None
        _login(client, "lastlogin@example.com")
        assert api_env.user_store.get_by_id(uid).last_login is not None

    def test_malformed_body_is_validation_error(self, client) -> None:
        resp = client.post("/api/v1/auth/login", json={"email": "not-an-email", "password": "x"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestLoginFailures:
    """Every credential failure must look the same from the outside."""

    def test_unknown_email_and_wrong_password_identical(self, api_env, client) -> None:
        create_user(api_env.user_store, "known@example.com")
        unknown = _login(client, "nobody@example.com")
        wrong = _login(client, "known@example.com", password="Wrong-Password-99")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.json()["error"]["code"] == "bad_credentials"

    def test_inactive_account_identical_to_wrong_password(self, api_env, client) -> None:
        create_user(api_env.user_store, "inactive@example.com", is_active=False)
        create_user(api_env.user_store, "active@example.com")
        inactive = _login(client, "inactive@example.com")
        wrong = _login(client, "active@example.com", password="Wrong-Password-99")
        assert inactive.status_code == 401
        assert inactive.json() == wrong.json()

    def test_failure_sets_no_cookies(self, api_env, client) -> None:
        resp = _login(client, "ghost@example.com")
        assert resp.status_code == 401
        assert set_cookies(resp) == {}

    def test_lockout_after_max_attempts(self, api_env, client) -> None:
        create_user(api_env.user_store, "lockme@example.com")
        for attempt in range(5):
            resp = _login(client, "lockme@example.com", password="Wrong-Password-99")
            assert resp.status_code == 401, f"attempt {attempt + 1}: {resp.text}"
            assert resp.json()["error"]["detail"] == f"remaining_attempts={4 - attempt}"

        locked = _login(client, "lockme@example.com")
        assert locked.status_code == 429
        assert locked.json()["error"]["code"] == "account_locked"
        assert int(locked.headers["retry-after"]) > 0

    def test_successful_login_clears_failures(self, api_env, client) -> None:
        create_user(api_env.user_store, "recover@example.com")
        for _ in range(3):
            _login(client, "recover@example.com", password="Wrong-Password-99")
        assert _login(client, "recover@example.com").status_code == 200
        resp = _login(client, "recover@example.com", password="Wrong-Password-99")
        assert resp.json()["error"]["detail"] == "remaining_attempts=4"


class TestRegister:
    def test_register_creates_viewer_with_session(self, api_env, client) -> None:
        resp = client.post(
            "/api/v1/auth/register",
            json={"name": "New Person", "email": "New.Person@example.com", "password": STRONG_PASSWORD},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["email"] == "new.person@example.com"
        assert data["role"] == "viewer"
        assert data["refresh_token"]
        assert {"access_token", "refresh_token"} <= set(set_cookies(resp))

        user = api_env.user_store.get_by_email("new.person@example.com")
        assert user is not None and user.role is Role.VIEWER
        assert [m.subject for m in api_env.outbox.to("new.person@example.com")] == ["Welcome to Folio"]

    def test_register_duplicate_email_conflict(self, api_env, client) -> None:
        create_user(api_env.user_store, "taken@example.com")
        resp = client.post(
            "/api/v1/auth/register",
            json={"name": "Dup", "email": "TAKEN@example.com", "password": STRONG_PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_register_weak_password(self, api_env, client) -> None:
        resp = client.post(
            "/api/v1/auth/register",
            json={"name": "Weak", "email": "weak@example.com", "password": "short"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"
        assert api_env.user_store.get_by_email("weak@example.com") is None


class TestVerify:
    def test_verify_without_session(self, client) -> None:
        resp = client.get("/api/v1/auth/verify")
        assert resp.status_code == 200
        assert resp.json() == {"valid": False}

    def test_verify_with_cookie(self, api_env, client) -> None:
        create_user(api_env.user_store, "verify-cookie@example.com", role=Role.DEV)
        token = _login(client, "verify-cookie@example.com").json()["access_token"]
        resp = client.get("/api/v1/auth/verify", headers=cookie_header(access_token=token))
        assert resp.json() == {"valid": True, "username": "verify-cookie@example.com", "roles": ["dev"]}

    def test_verify_with_bearer(self, api_env, client) -> None:
        create_user(api_env.user_store, "verify-bearer@example.com")
        token = _login(client, "verify-bearer@example.com").json()["access_token"]
        client.cookies.clear()
        resp = client.get("/api/v1/auth/verify", headers={"Authorization": f"Bearer {token}"})
        assert resp.json()["valid"] is True

    def test_verify_with_garbage_token(self, client) -> None:
        resp = client.get("/api/v1/auth/verify", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.json() == {"valid": False}

    def test_deactivated_user_token_rejected(self, api_env, client) -> None:
        uid = create_user(api_env.user_store, "deactivated@example.com")
        token = _login(client, "deactivated@example.com").json()["access_token"]
        api_env.user_store.update_user(uid, is_active=False)
        client.cookies.clear()
        resp = client.get("/api/v1/auth/verify", headers={"Authorization": f"Bearer {token}"})
        assert resp.json() == {"valid": False}
