from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class Session:
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    scopes: List[str] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_seconds: int = 3600,
        *,
        scopes: Optional[List[str]] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            scopes=list(scopes or []),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class Permissions:
    user_id: str
    server_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)


@dataclass
class OAuthClient:
    client_id: str
    user_id: str
    name: str = ""
    description: str = ""
    # Empty for account-level clients
    server_id: str = ""
    secret_hash: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    token: str
    client_id: str
    user_id: str
    scope: str = ""
    created_at: datetime = field(default_factory=utcnow)
    # None never expires
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class OtpState(str, Enum):
    NOT_ENROLLED = "not_enrolled"
    PENDING = "pending"
    ENROLLED = "enrolled"


@dataclass
class OtpEnrollment:
    user_id: str
    state: OtpState = OtpState.NOT_ENROLLED
    secret: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)
