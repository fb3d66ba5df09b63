from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from serverpanel.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "field_required",
    "invalid_credentials",
    "token_malformed",
    "token_invalid",
    "token_expired",
    "unsupported_grant_type",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Body of every error response; successful calls return their payload bare."""

    status: str = Field("error", pattern="^error$")
    error: ErrorBody
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = _normalize_unicode(value.strip())
    if not value:
        return None
    if len(value) > 100:
        raise ValueError("username must be at most 100 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may contain only letters, digits, '.', '_' and '-'")
    return value


def _validate_password_strength(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class LoginRequest(BaseModel):
    email: str = ""
    # Empty passwords are reported as field_required by the service layer
    password: str = ""
    otp: Optional[str] = Field(default=None, max_length=10)


class ScopesResponse(BaseModel):
    scopes: List[str]


class UserResponse(BaseModel):
    id: str
    username: str
    email: str


class SelfUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = None
    password: str = ""
    new_password: Optional[str] = Field(default=None, alias="newPassword")

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value)


class OtpStatusResponse(BaseModel):
    otpEnabled: bool


class OtpChallengeResponse(BaseModel):
    secret: str
    img: str


class OtpValidateRequest(BaseModel):
    token: str = Field(default="", max_length=10)


class ClientCreateRequest(BaseModel):
    name: str = Field(default="", max_length=100)
    description: str = Field(default="", max_length=1000)


class ClientResponse(BaseModel):
    client_id: str
    name: str
    description: str


class CreatedClientResponse(BaseModel):
    clientId: str
    clientSecret: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: str = ""
