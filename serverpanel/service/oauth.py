from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from serverpanel.logging import get_logger
from serverpanel.service.auth import UserService
from serverpanel.service.errors import (
    AuthenticationError,
    FieldRequiredError,
    ForbiddenError,
    IssuanceError,
    ValidationError,
)
from serverpanel.service.issuance import TokenIssuer, TokenMeta
from serverpanel.service.otp import OtpService
from serverpanel.service.permissions import PermissionResolver, has_scope, intersect_scopes
from serverpanel.storage.models import OAuthClient, RefreshTokenRecord, utcnow

logger = get_logger(__name__)

GRANT_CLIENT_CREDENTIALS = "client_credentials"
GRANT_PASSWORD = "password"
GRANT_REFRESH_TOKEN = "refresh_token"


class RefreshTokenStore(Protocol):
    def save_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def pop_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...


class TokenGrantService:
    """Token endpoint grants for authenticated OAuth2 clients.

    Refresh tokens are single use: redeeming one deletes its record and a new
    pair is issued.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        issuer: TokenIssuer,
        users: UserService,
        permissions: PermissionResolver,
        otp: OtpService,
        *,
        ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 2592000,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.users = users
        self.permissions = permissions
        self.otp = otp
        self.ttl_seconds = ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds

    def _client_scopes(self, client: OAuthClient, user_id: str) -> List[str]:
        server_id = client.server_id or None
        return list(self.permissions.get_for_user_and_server(user_id, server_id).scopes)

    def _respond(
        self,
        client: OAuthClient,
        user_id: str,
        scopes: List[str],
        *,
        want_refresh: bool,
        now: datetime,
    ) -> Dict[str, Any]:
        scope = " ".join(scopes)
        issued = self.issuer.issue(
            client,
            user_id,
            TokenMeta(created_at=now, expires_in=self.ttl_seconds, scope=scope),
            want_refresh=want_refresh,
        )
        body: Dict[str, Any] = {
            "access_token": issued.access_token,
            "token_type": "Bearer",
            "expires_in": self.ttl_seconds,
            "scope": scope,
        }
        if issued.refresh_token:
            self.store.save_refresh_token(
                RefreshTokenRecord(
                    token=issued.refresh_token,
                    client_id=client.client_id,
                    user_id=user_id,
                    scope=scope,
                    created_at=now,
                    expires_at=now + timedelta(seconds=self.refresh_ttl_seconds),
                )
            )
            body["refresh_token"] = issued.refresh_token
        return body

    def grant(
        self,
        client: OAuthClient,
        grant_type: str,
        *,
        scope: str = "",
        username: Optional[str] = None,
        password: Optional[str] = None,
        otp: Optional[str] = None,
        refresh_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        if not grant_type:
            raise FieldRequiredError("grant_type")

        if grant_type == GRANT_CLIENT_CREDENTIALS:
            granted = intersect_scopes(scope, self._client_scopes(client, client.user_id))
            logger.info("token_granted", grant_type=grant_type, client_id=client.client_id)
            return self._respond(client, client.user_id, granted, want_refresh=False, now=now)

        if grant_type == GRANT_PASSWORD:
            user = self.users.authenticate(username or "", password or "")
            if self.otp.get_status(user.id):
                if not otp:
                    raise FieldRequiredError("otp")
                if not self.otp.verify_code(user.id, otp):
                    raise AuthenticationError("invalid otp code")
            granted = intersect_scopes(scope, self._client_scopes(client, user.id))
            logger.info("token_granted", grant_type=grant_type, client_id=client.client_id)
            return self._respond(client, user.id, granted, want_refresh=True, now=now)

        if grant_type == GRANT_REFRESH_TOKEN:
            if not refresh_token:
                raise FieldRequiredError("refresh_token")
            record = self.store.pop_refresh_token(refresh_token)
            if record is None:
                raise AuthenticationError("invalid refresh token")
            if record.client_id != client.client_id:
                # A token presented by the wrong client stays revoked
                logger.warning(
                    "refresh_token_client_mismatch",
                    client_id=client.client_id,
                    owner_client_id=record.client_id,
                )
                raise ForbiddenError("refresh token was not issued to this client")
            current = self._client_scopes(client, record.user_id)
            narrowed = intersect_scopes(scope, record.scope.split())
            granted = [s for s in narrowed if has_scope(current, s)]
            try:
                body = self._respond(client, record.user_id, granted, want_refresh=True, now=now)
            except IssuanceError:
                # Nothing was issued, so the presented token stays redeemable
                self.store.save_refresh_token(record)
                raise
            logger.info("token_refreshed", client_id=client.client_id, user_id=record.user_id)
            return body

        raise ValidationError(
            f"unsupported grant type: {grant_type}",
            error_code="unsupported_grant_type",
        )
