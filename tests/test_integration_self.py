"""HTTP tests for login, re-authentication and the self-service endpoints."""

import time

import pyotp
import pytest
from fastapi.testclient import TestClient

from serverpanel import app as app_module
from serverpanel.service.runtime import get_runtime

COOKIE = "serverpanel_auth"
PASSWORD = "correct horse battery"


@pytest.fixture
def user():
    return get_runtime().users.create_user("alice", "alice@example.com", PASSWORD)


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def _record(address, template_key, variables=None):
        sent.append((address, template_key, dict(variables or {})))
        return True

    monkeypatch.setattr(get_runtime().email, "send_email", _record)
    return sent


def _login(client, email="alice@example.com", password=PASSWORD, **extra):
    return client.post("/api/auth/login", json={"email": email, "password": password, **extra})


@pytest.fixture
def logged_in(client, user):
    resp = _login(client)
    assert resp.status_code == 200, resp.text
    return client


def _wrong_code(secret):
    totp = pyotp.TOTP(secret)
    accepted = {totp.at(time.time(), offset) for offset in range(-2, 3)}
    return next(c for c in ("000000", "111111", "222222") if c not in accepted)


class TestLogin:
    def test_login_sets_session_cookies(self, client, user):
        resp = _login(client)

        assert resp.status_code == 200
        body = resp.json()
        assert set(body) == {"scopes"}
        assert sorted(body["scopes"]) == ["login", "self.clients", "self.edit"]
        headers = resp.headers.get_list("set-cookie")
        assert any(h.startswith(f"{COOKIE}=") and "HttpOnly" in h for h in headers)
        assert any(h.startswith(f"{COOKIE}_expires=") for h in headers)
        assert client.cookies.get(COOKIE)

    def test_email_is_case_insensitive(self, client, user):
        assert _login(client, email="Alice@Example.com").status_code == 200

    def test_wrong_password(self, client, user):
        resp = _login(client, password="wrong password")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_credentials"
        assert COOKIE not in client.cookies

    def test_missing_password(self, client, user):
        resp = client.post("/api/auth/login", json={"email": "alice@example.com"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "field_required"
        assert resp.json()["error"]["details"] == {"field": "password"}

    def test_account_without_login_scope(self, client):
        get_runtime().users.create_user(
            "locked", "locked@example.com", PASSWORD, scopes=["self.edit"]
        )

        resp = _login(client, email="locked@example.com")

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"


class TestAuthentication:
    def test_self_requires_authentication(self, client):
        resp = client.get("/api/self")

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_unknown_session_cookie(self, client):
        client.cookies.set(COOKIE, "not-a-session")

        assert client.get("/api/self").status_code == 401

    def test_missing_scope_is_forbidden(self, client):
        get_runtime().users.create_user(
            "viewer", "viewer@example.com", PASSWORD, scopes=["login"]
        )
        assert _login(client, email="viewer@example.com").status_code == 200

        resp = client.get("/api/self/oauth2")

        assert resp.status_code == 403
        assert resp.json()["error"]["details"] == {"scope": "self.clients"}

    def test_get_self(self, logged_in, user):
        resp = logged_in.get("/api/self")

        assert resp.status_code == 200
        assert resp.json() == {
            "id": user.id,
            "username": "alice",
            "email": "alice@example.com",
        }

    def test_request_id_is_echoed(self, logged_in):
        resp = logged_in.get("/api/self", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"

    def test_request_id_in_error_body(self, client):
        resp = client.get("/api/self", headers={"X-Request-ID": "req-456"})

        assert resp.status_code == 401
        assert set(resp.json()) == {"status", "error", "request_id"}
        assert resp.json()["request_id"] == "req-456"


class TestReauthAndLogout:
    def test_reauth_rotates_session(self, logged_in):
        old_token = logged_in.cookies.get(COOKIE)

        resp = logged_in.post("/api/auth/reauth")

        assert resp.status_code == 200
        assert sorted(resp.json()["scopes"]) == ["login", "self.clients", "self.edit"]
        new_token = logged_in.cookies.get(COOKIE)
        assert new_token and new_token != old_token
        assert get_runtime().store.get_session(new_token) is not None

    def test_reauth_requires_authentication(self, client):
        assert client.post("/api/auth/reauth").status_code == 401

    def test_cookies_are_secure_over_https(self, user):
        client = TestClient(app_module.app, base_url="https://testserver")

        resp = _login(client)
        assert resp.status_code == 200
        assert all("Secure" in h for h in resp.headers.get_list("set-cookie"))

        resp = client.post("/api/auth/reauth")
        assert resp.status_code == 200
        headers = resp.headers.get_list("set-cookie")
        assert len(headers) == 2
        assert all("Secure" in h and "Max-Age=3600" in h for h in headers)

    def test_cookies_are_not_secure_over_http(self, logged_in):
        resp = logged_in.post("/api/auth/reauth")

        assert not any("Secure" in h for h in resp.headers.get_list("set-cookie"))

    def test_logout_revokes_session(self, logged_in):
        token = logged_in.cookies.get(COOKIE)

        resp = logged_in.post("/api/auth/logout")

        assert resp.status_code == 204
        assert get_runtime().store.get_session(token) is None
        logged_in.cookies.set(COOKIE, token)
        assert logged_in.get("/api/self").status_code == 401


class TestUpdateSelf:
    def test_password_is_required(self, logged_in):
        resp = logged_in.put("/api/self", json={"username": "alice2"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "field_required"

    def test_wrong_password(self, logged_in):
        resp = logged_in.put("/api/self", json={"username": "alice2", "password": "nope-nope"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_change_username(self, logged_in, sent_emails):
        resp = logged_in.put("/api/self", json={"username": "alice2", "password": PASSWORD})

        assert resp.status_code == 204
        assert logged_in.get("/api/self").json()["username"] == "alice2"
        assert sent_emails == []

    def test_change_email_notifies_old_address(self, logged_in, sent_emails):
        resp = logged_in.put(
            "/api/self", json={"email": "alice@new.example.com", "password": PASSWORD}
        )

        assert resp.status_code == 204
        assert sent_emails == [
            ("alice@example.com", "emailChanged", {"NEW_EMAIL": "alice@new.example.com"})
        ]
        assert logged_in.get("/api/self").json()["email"] == "alice@new.example.com"

    def test_change_password(self, client, logged_in, sent_emails):
        other = TestClient(app_module.app)
        assert _login(other).status_code == 200

        resp = logged_in.put(
            "/api/self", json={"password": PASSWORD, "newPassword": "an even better one"}
        )

        assert resp.status_code == 204
        assert [s[1] for s in sent_emails] == ["passwordChanged"]
        # The current session survives, other sessions are revoked
        assert logged_in.get("/api/self").status_code == 200
        assert other.get("/api/self").status_code == 401
        fresh = TestClient(app_module.app)
        assert _login(fresh).status_code == 400
        assert _login(fresh, password="an even better one").status_code == 200

    def test_weak_new_password(self, logged_in):
        resp = logged_in.put("/api/self", json={"password": PASSWORD, "newPassword": "short"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_email_taken(self, logged_in):
        get_runtime().users.create_user("bob", "bob@example.com", PASSWORD)

        resp = logged_in.put("/api/self", json={"email": "bob@example.com", "password": PASSWORD})

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_failing_email_does_not_fail_request(self, logged_in, monkeypatch):
        def _explode(*args, **kwargs):
            raise RuntimeError("smtp unreachable")

        monkeypatch.setattr(get_runtime().email, "send_email", _explode)

        resp = logged_in.put(
            "/api/self", json={"email": "alice@other.example.com", "password": PASSWORD}
        )

        assert resp.status_code == 204
        assert logged_in.get("/api/self").json()["email"] == "alice@other.example.com"


class TestOtpEndpoints:
    def _enable(self, client):
        resp = client.post("/api/self/otp")
        assert resp.status_code == 200
        secret = resp.json()["secret"]
        resp = client.put("/api/self/otp", json={"token": pyotp.TOTP(secret).now()})
        assert resp.status_code == 204
        return secret

    def test_status_defaults_to_disabled(self, logged_in):
        resp = logged_in.get("/api/self/otp")

        assert resp.json() == {"otpEnabled": False}

    def test_start_enroll_returns_qr_image(self, logged_in):
        data = logged_in.post("/api/self/otp").json()

        assert data["secret"]
        assert data["img"].startswith("data:image/png;base64,")
        assert logged_in.get("/api/self/otp").json()["otpEnabled"] is False

    def test_enable_and_disable(self, logged_in, sent_emails):
        secret = self._enable(logged_in)
        assert logged_in.get("/api/self/otp").json()["otpEnabled"] is True

        resp = logged_in.delete(f"/api/self/otp/{pyotp.TOTP(secret).now()}")

        assert resp.status_code == 204
        assert logged_in.get("/api/self/otp").json()["otpEnabled"] is False
        assert [s[1] for s in sent_emails] == ["otpEnabled", "otpDisabled"]

    def test_validate_without_enrollment(self, logged_in):
        resp = logged_in.put("/api/self/otp", json={"token": "123456"})

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_validate_with_wrong_code(self, logged_in):
        secret = logged_in.post("/api/self/otp").json()["secret"]

        resp = logged_in.put("/api/self/otp", json={"token": _wrong_code(secret)})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_start_enroll_when_enabled(self, logged_in):
        self._enable(logged_in)

        assert logged_in.post("/api/self/otp").status_code == 409

    def test_disable_with_wrong_code(self, logged_in):
        secret = self._enable(logged_in)

        resp = logged_in.delete(f"/api/self/otp/{_wrong_code(secret)}")

        assert resp.status_code == 400
        assert logged_in.get("/api/self/otp").json()["otpEnabled"] is True

    def test_login_requires_otp_once_enabled(self, logged_in):
        secret = self._enable(logged_in)
        client = TestClient(app_module.app)

        missing = _login(client)
        assert missing.status_code == 400
        assert missing.json()["error"]["details"] == {"field": "otp"}

        wrong = _login(client, otp=_wrong_code(secret))
        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "invalid_credentials"

        assert _login(client, otp=pyotp.TOTP(secret).now()).status_code == 200


class TestPersonalClients:
    def test_create_list_delete(self, logged_in, sent_emails):
        resp = logged_in.post("/api/self/oauth2", json={"name": "ci", "description": "deploys"})

        assert resp.status_code == 200
        created = resp.json()
        assert len(created["clientSecret"]) == 36

        listed = logged_in.get("/api/self/oauth2").json()
        assert listed == [{"client_id": created["clientId"], "name": "ci", "description": "deploys"}]

        assert logged_in.delete(f"/api/self/oauth2/{created['clientId']}").status_code == 204
        assert logged_in.get("/api/self/oauth2").json() == []
        assert [s[1] for s in sent_emails] == ["oauthCreated", "oauthDeleted"]

    def test_create_without_body(self, logged_in):
        resp = logged_in.post("/api/self/oauth2")

        assert resp.status_code == 200
        assert resp.json()["clientId"]

    def test_listing_hides_secrets(self, logged_in):
        logged_in.post("/api/self/oauth2", json={"name": "ci"})

        listed = logged_in.get("/api/self/oauth2").json()

        assert "clientSecret" not in listed[0]
        assert "secret_hash" not in listed[0]

    def test_server_clients_are_not_listed(self, logged_in, user):
        get_runtime().clients.create(user, name="srv", server_id="server-1")

        assert logged_in.get("/api/self/oauth2").json() == []

    def test_cannot_delete_another_users_client(self, logged_in):
        runtime = get_runtime()
        bob = runtime.users.create_user("bob", "bob@example.com", PASSWORD)
        client, _ = runtime.clients.create(bob, name="bobs")

        resp = logged_in.delete(f"/api/self/oauth2/{client.client_id}")

        assert resp.status_code == 404
        assert runtime.store.get_client(client.client_id) is not None

    def test_delete_unknown_client(self, logged_in):
        assert logged_in.delete("/api/self/oauth2/does-not-exist").status_code == 404
