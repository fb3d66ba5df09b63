"""Signed claim tokens for OAuth2 access and the refresh tokens derived from them.

Access tokens are compact JWS strings produced with PyJWT. The payload carries
``client_id``, ``user_id``, ``expired_at`` (unix seconds) and ``scopes``.
Signature and expiry are checked as two separate gates so callers can tell a
forged token from an expired one.
"""

from __future__ import annotations

import base64
import binascii
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

import jwt

from serverpanel.logging import get_logger
from serverpanel.service.errors import (
    ExpiredTokenError,
    InvalidSignatureError,
    MalformedTokenError,
    SigningError,
)

logger = get_logger(__name__)

_SCOPE_SPLIT = re.compile(r"[\s,]+")

Timestamp = Union[datetime, int, float]


@dataclass(frozen=True)
class TokenConfig:
    """Key material and algorithm used to sign and verify access tokens."""

    key: Union[str, bytes]
    algorithm: str = "HS256"

    def __repr__(self) -> str:
        return f"TokenConfig(key=<hidden>, algorithm={self.algorithm!r})"


@dataclass(frozen=True)
class ClaimToken:
    client_id: str
    user_id: str
    expires_at: int
    scopes: str = ""

    @property
    def scope_set(self) -> frozenset[str]:
        return frozenset(s for s in _SCOPE_SPLIT.split(self.scopes) if s)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.client_id:
            payload["client_id"] = self.client_id
        if self.user_id:
            payload["user_id"] = self.user_id
        payload["expired_at"] = self.expires_at
        if self.scopes:
            payload["scopes"] = self.scopes
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ClaimToken":
        expires_at = payload.get("expired_at")
        # bool is an int subclass; reject it explicitly
        if isinstance(expires_at, bool) or not isinstance(expires_at, int):
            raise MalformedTokenError("token expiry claim missing or not an integer")
        fields = {}
        for name in ("client_id", "user_id", "scopes"):
            value = payload.get(name, "")
            if not isinstance(value, str):
                raise MalformedTokenError(f"token claim {name} must be a string")
            fields[name] = value
        return cls(
            client_id=fields["client_id"],
            user_id=fields["user_id"],
            expires_at=expires_at,
            scopes=fields["scopes"],
        )


def _timestamp(now: Timestamp) -> float:
    if isinstance(now, datetime):
        return now.timestamp()
    return float(now)


def validate_claims(claims: ClaimToken, now: Timestamp) -> None:
    """Raise ExpiredTokenError unless ``now`` is strictly before the expiry."""
    if claims.expires_at <= _timestamp(now):
        raise ExpiredTokenError(
            "access token expired", detail={"expired_at": claims.expires_at}
        )


def sign(claims: ClaimToken, config: TokenConfig) -> str:
    try:
        return jwt.encode(claims.to_payload(), config.key, algorithm=config.algorithm)
    except (jwt.PyJWTError, NotImplementedError, ValueError, TypeError) as exc:
        logger.error(
            "token_sign_failed", algorithm=config.algorithm, error_type=type(exc).__name__
        )
        raise SigningError("failed to sign access token") from exc


def _check_signature_segment(segment: str) -> None:
    # Several base64url strings decode to the same bytes when the trailing
    # bits differ; only the canonical encoding is accepted.
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError) as exc:
        raise MalformedTokenError("token signature is not valid base64url") from exc
    if base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=") != segment:
        raise InvalidSignatureError("token signature does not verify")


def verify(token: str, config: TokenConfig, *, now: Timestamp) -> ClaimToken:
    """Decode ``token``, check its signature and then its expiry at ``now``."""
    if not isinstance(token, str) or token.count(".") != 2:
        raise MalformedTokenError("token must be three dot-separated segments")
    _check_signature_segment(token.rsplit(".", 1)[1])
    try:
        payload = jwt.decode(
            token,
            config.key,
            algorithms=[config.algorithm],
            options={"verify_exp": False, "verify_nbf": False, "verify_iat": False},
        )
    # InvalidSignatureError subclasses DecodeError, so it is caught first
    except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as exc:
        raise InvalidSignatureError("token signature does not verify") from exc
    except jwt.DecodeError as exc:
        raise MalformedTokenError("token could not be decoded") from exc
    except jwt.InvalidKeyError as exc:
        raise SigningError("token key does not match the configured algorithm") from exc
    except jwt.PyJWTError as exc:
        raise MalformedTokenError("token claims are invalid") from exc
    claims = ClaimToken.from_payload(payload)
    validate_claims(claims, now)
    return claims


def derive_refresh_token(access_token: str, *, namespace: Optional[uuid.UUID] = None) -> str:
    """Derive an opaque refresh token from a freshly signed access token.

    A random namespace is drawn per call, so the same access token yields a
    different refresh token every time and the access token cannot be
    recovered from the result. The output is unpadded, uppercased base64url.
    """
    derived = uuid.uuid5(namespace or uuid.uuid4(), access_token)
    return base64.urlsafe_b64encode(derived.bytes).decode("ascii").rstrip("=").upper()


__all__ = [
    "ClaimToken",
    "TokenConfig",
    "derive_refresh_token",
    "sign",
    "validate_claims",
    "verify",
]
