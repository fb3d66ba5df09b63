"""HTTP tests for the OAuth2 token endpoint and bearer authentication."""

import base64
import re
import time

import pyotp
import pytest
from fastapi.testclient import TestClient

from serverpanel import app as app_module
from serverpanel.service.issuance import TokenIssuer
from serverpanel.service.notifications import Outbox
from serverpanel.service.runtime import get_runtime
from serverpanel.service.tokens import ClaimToken, TokenConfig, sign
from serverpanel.storage.models import utcnow

PASSWORD = "correct horse battery"
TOKEN_URL = "/api/oauth2/token"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def user():
    return get_runtime().users.create_user("alice", "alice@example.com", PASSWORD)


@pytest.fixture
def oauth_client(user):
    client, secret = get_runtime().clients.create(user, name="ci")
    return client.client_id, secret


def _token(client, oauth_client, **form):
    client_id, secret = oauth_client
    return client.post(TOKEN_URL, data={"client_id": client_id, "client_secret": secret, **form})


def _password_grant(client, oauth_client, **form):
    return _token(
        client,
        oauth_client,
        **{
            "grant_type": "password",
            "username": "alice@example.com",
            "password": PASSWORD,
            **form,
        },
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestClientAuthentication:
    def test_unknown_client(self, client):
        resp = client.post(
            TOKEN_URL,
            data={"grant_type": "client_credentials", "client_id": "nope", "client_secret": "x"},
        )

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_wrong_secret(self, client, oauth_client):
        resp = _token(client, (oauth_client[0], "wrong-secret"), grant_type="client_credentials")

        assert resp.status_code == 401

    def test_basic_auth(self, client, oauth_client):
        client_id, secret = oauth_client
        credentials = base64.b64encode(f"{client_id}:{secret}".encode()).decode()

        resp = client.post(
            TOKEN_URL,
            data={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {credentials}"},
        )

        assert resp.status_code == 200
        assert resp.json()["token_type"] == "Bearer"

    def test_malformed_basic_auth(self, client, oauth_client):
        resp = client.post(
            TOKEN_URL,
            data={"grant_type": "client_credentials"},
            headers={"Authorization": "Basic %%%"},
        )

        assert resp.status_code == 401


class TestGrants:
    def test_client_credentials(self, client, oauth_client):
        resp = _token(client, oauth_client, grant_type="client_credentials")

        assert resp.status_code == 200
        body = resp.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert sorted(body["scope"].split()) == ["login", "self.clients", "self.edit"]
        assert "refresh_token" not in body
        assert resp.headers["Cache-Control"] == "no-store"

    def test_requested_scope_is_narrowed(self, client, oauth_client):
        resp = _token(client, oauth_client, grant_type="client_credentials", scope="login admin")

        assert resp.json()["scope"] == "login"

    def test_password_grant(self, client, oauth_client):
        resp = _password_grant(client, oauth_client)

        assert resp.status_code == 200
        body = resp.json()
        assert body["access_token"].count(".") == 2
        assert re.fullmatch(r"[A-Z0-9_-]{22}", body["refresh_token"])

    def test_password_grant_bad_password(self, client, oauth_client):
        resp = _password_grant(client, oauth_client, password="not the password")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_password_grant_with_otp(self, client, oauth_client, user):
        otp = get_runtime().otp
        challenge = otp.start_enroll(user)
        otp.validate_enroll(user, pyotp.TOTP(challenge.secret).now(), Outbox())

        missing = _password_grant(client, oauth_client)
        assert missing.status_code == 400
        assert missing.json()["error"]["details"] == {"field": "otp"}

        ok = _password_grant(client, oauth_client, otp=pyotp.TOTP(challenge.secret).now())
        assert ok.status_code == 200

    def test_missing_grant_type(self, client, oauth_client):
        resp = _token(client, oauth_client)

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "field_required"

    def test_unsupported_grant_type(self, client, oauth_client):
        resp = _token(client, oauth_client, grant_type="authorization_code")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unsupported_grant_type"


class TestRefreshTokenGrant:
    def test_refresh_rotates_tokens(self, client, oauth_client):
        first = _password_grant(client, oauth_client).json()

        resp = _token(
            client, oauth_client, grant_type="refresh_token", refresh_token=first["refresh_token"]
        )

        assert resp.status_code == 200
        second = resp.json()
        assert second["refresh_token"] != first["refresh_token"]
        assert sorted(second["scope"].split()) == sorted(first["scope"].split())

    def test_refresh_token_is_single_use(self, client, oauth_client):
        refresh = _password_grant(client, oauth_client).json()["refresh_token"]
        _token(client, oauth_client, grant_type="refresh_token", refresh_token=refresh)

        resp = _token(client, oauth_client, grant_type="refresh_token", refresh_token=refresh)

        assert resp.status_code == 401

    def test_refresh_can_narrow_scope(self, client, oauth_client):
        refresh = _password_grant(client, oauth_client).json()["refresh_token"]

        resp = _token(
            client, oauth_client, grant_type="refresh_token", refresh_token=refresh, scope="login"
        )

        assert resp.json()["scope"] == "login"

    def test_refresh_cannot_widen_scope(self, client, oauth_client):
        refresh = _password_grant(client, oauth_client, scope="login").json()["refresh_token"]

        resp = _token(
            client,
            oauth_client,
            grant_type="refresh_token",
            refresh_token=refresh,
            scope="login self.edit",
        )

        assert resp.json()["scope"] == "login"

    def test_refresh_by_another_client_is_forbidden_and_burns_token(
        self, client, oauth_client, user
    ):
        other_client, other_secret = get_runtime().clients.create(user, name="other")
        refresh = _password_grant(client, oauth_client).json()["refresh_token"]

        stolen = _token(
            client,
            (other_client.client_id, other_secret),
            grant_type="refresh_token",
            refresh_token=refresh,
        )
        assert stolen.status_code == 403

        retry = _token(client, oauth_client, grant_type="refresh_token", refresh_token=refresh)
        assert retry.status_code == 401

    def test_deleting_client_revokes_refresh_tokens(self, client, oauth_client, user):
        refresh = _password_grant(client, oauth_client).json()["refresh_token"]
        get_runtime().clients.delete_personal(user, oauth_client[0])

        assert get_runtime().store.pop_refresh_token(refresh) is None

    def test_refresh_token_carries_expiry(self, client, oauth_client):
        refresh = _password_grant(client, oauth_client).json()["refresh_token"]

        record = get_runtime().store.refresh_tokens[refresh]
        lifetime = record.expires_at - utcnow()

        assert 29 < lifetime.days < 31

    def test_expired_refresh_token_is_rejected(self, client, oauth_client):
        refresh = _password_grant(client, oauth_client).json()["refresh_token"]
        get_runtime().store.refresh_tokens[refresh].expires_at = utcnow()

        resp = _token(client, oauth_client, grant_type="refresh_token", refresh_token=refresh)

        assert resp.status_code == 401

    def test_refresh_token_survives_issuance_failure(self, client, oauth_client):
        refresh = _password_grant(client, oauth_client).json()["refresh_token"]
        grants = get_runtime().grants
        working = grants.issuer
        # HS256 secret cannot sign RS256
        grants.issuer = TokenIssuer(TokenConfig(key="not-an-rsa-key", algorithm="RS256"))

        failed = TestClient(app_module.app, raise_server_exceptions=False).post(
            TOKEN_URL,
            data={
                "client_id": oauth_client[0],
                "client_secret": oauth_client[1],
                "grant_type": "refresh_token",
                "refresh_token": refresh,
            },
        )
        assert failed.status_code == 500

        grants.issuer = working
        retry = _token(client, oauth_client, grant_type="refresh_token", refresh_token=refresh)
        assert retry.status_code == 200


class TestBearerAuthentication:
    def test_access_token_authenticates_self(self, client, oauth_client, user):
        access = _password_grant(client, oauth_client).json()["access_token"]

        resp = client.get("/api/self", headers=_bearer(access))

        assert resp.status_code == 200
        assert resp.json()["id"] == user.id

    def test_scope_is_enforced_for_bearer(self, client, oauth_client):
        access = _password_grant(client, oauth_client, scope="login").json()["access_token"]

        assert client.get("/api/self", headers=_bearer(access)).status_code == 200
        assert client.get("/api/self/oauth2", headers=_bearer(access)).status_code == 403

    def test_bearer_token_cannot_mint_a_session(self, client, oauth_client):
        access = _token(
            client, oauth_client, grant_type="client_credentials", scope="login"
        ).json()["access_token"]

        resp = client.post("/api/auth/reauth", headers=_bearer(access))

        assert resp.status_code == 401
        assert "set-cookie" not in resp.headers
        assert not client.cookies
        assert client.post("/api/self/oauth2", headers=_bearer(access)).status_code == 403

    def test_expired_access_token(self, client, user):
        runtime = get_runtime()
        expired = sign(
            ClaimToken("client-x", user.id, int(time.time()) - 10, scopes="login"),
            runtime.token_config,
        )

        resp = client.get("/api/self", headers=_bearer(expired))

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"

    def test_tampered_access_token(self, client, oauth_client):
        access = _password_grant(client, oauth_client).json()["access_token"]
        header, payload, signature = access.split(".")
        swapped = "A" if signature[5] != "A" else "B"
        tampered = f"{header}.{payload}.{signature[:5]}{swapped}{signature[6:]}"

        resp = client.get("/api/self", headers=_bearer(tampered))

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_malformed_access_token(self, client):
        resp = client.get("/api/self", headers=_bearer("not-a-jwt"))

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "token_malformed"

    def test_token_for_deleted_user(self, client, oauth_client, user):
        access = _password_grant(client, oauth_client).json()["access_token"]
        get_runtime().store.delete_user(user.id)

        assert client.get("/api/self", headers=_bearer(access)).status_code == 401
