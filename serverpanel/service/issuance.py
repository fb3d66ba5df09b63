from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

from serverpanel.logging import get_logger
from serverpanel.service.errors import IssuanceError, SigningError
from serverpanel.service.tokens import ClaimToken, TokenConfig, derive_refresh_token, sign
from serverpanel.storage.models import OAuthClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenMeta:
    created_at: datetime
    expires_in: Union[timedelta, int]
    scope: str = ""

    @property
    def expires_in_seconds(self) -> int:
        if isinstance(self.expires_in, timedelta):
            return int(self.expires_in.total_seconds())
        return int(self.expires_in)


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    # Empty when no refresh token was requested
    refresh_token: str
    claims: ClaimToken


class TokenIssuer:
    """Mint access tokens, and optionally refresh tokens, for a client and user.

    The issuer holds no state beyond its signing configuration; persisting the
    refresh token is the caller's job.
    """

    def __init__(self, config: TokenConfig) -> None:
        self.config = config

    def issue(
        self,
        client: OAuthClient,
        user_id: str,
        meta: TokenMeta,
        *,
        want_refresh: bool = False,
    ) -> IssuedTokens:
        expires_at = int(meta.created_at.timestamp()) + meta.expires_in_seconds
        claims = ClaimToken(
            client_id=client.client_id,
            user_id=user_id,
            expires_at=expires_at,
            scopes=meta.scope,
        )
        try:
            access = sign(claims, self.config)
        except SigningError as exc:
            raise IssuanceError("failed to issue access token") from exc
        refresh = derive_refresh_token(access) if want_refresh else ""
        logger.info(
            "access_token_issued",
            client_id=client.client_id,
            user_id=user_id,
            expired_at=expires_at,
            with_refresh=want_refresh,
        )
        return IssuedTokens(access_token=access, refresh_token=refresh, claims=claims)
