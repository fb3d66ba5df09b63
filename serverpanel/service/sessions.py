from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from serverpanel.logging import get_logger
from serverpanel.service.errors import AuthenticationError, InternalError, UnknownError
from serverpanel.service.permissions import PermissionResolver
from serverpanel.storage.models import Session, User, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        ttl_seconds: int = 3600,
        *,
        scopes: Optional[List[str]] = None,
    ) -> Session: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def revoke_session(self, token: str) -> None: ...

    def revoke_user_sessions(self, user_id: str, *, except_token: Optional[str] = None) -> int: ...


@dataclass(frozen=True)
class ReauthResult:
    token: str
    scopes: List[str]


class SessionService:
    """Opaque, server-side session tokens bound to the browser cookie."""

    def __init__(
        self,
        store: SessionStore,
        permissions: PermissionResolver,
        *,
        ttl_seconds: int = 3600,
    ) -> None:
        self.store = store
        self.permissions = permissions
        self.ttl_seconds = ttl_seconds

    def create_for_user(self, user: User, scopes: Optional[List[str]] = None) -> Session:
        if scopes is None:
            scopes = self.permissions.get_for_user_and_server(user.id, None).scopes
        session = self.store.create_session(user.id, self.ttl_seconds, scopes=scopes)
        logger.info("session_created", user_id=user.id)
        return session

    def reauthenticate(self, user: Optional[User]) -> ReauthResult:
        """Mint a fresh session for an already authenticated user.

        Global scopes are resolved before the session is created so the
        session carries them; either step failing raises InternalError and
        no session token is returned.
        """
        if user is None:
            raise UnknownError("no authenticated user in request context")
        try:
            perms = self.permissions.get_for_user_and_server(user.id, None)
        except Exception as exc:
            logger.error("reauth_permission_lookup_failed", user_id=user.id, error=str(exc))
            raise InternalError("failed to resolve permissions") from exc
        try:
            session = self.store.create_session(
                user.id, self.ttl_seconds, scopes=list(perms.scopes)
            )
        except Exception as exc:
            logger.error("reauth_session_create_failed", user_id=user.id, error=str(exc))
            raise InternalError("failed to create session") from exc
        logger.info("session_reauthenticated", user_id=user.id, scopes=perms.scopes)
        return ReauthResult(token=session.token, scopes=list(perms.scopes))

    def validate(self, token: str, *, now: Optional[datetime] = None) -> Session:
        session = self.store.get_session(token)
        if session is None:
            raise AuthenticationError("session not found")
        if session.is_expired(now or utcnow()):
            self.store.revoke_session(token)
            logger.info("session_expired", user_id=session.user_id)
            raise AuthenticationError("session expired")
        return session

    def revoke(self, token: str) -> None:
        self.store.revoke_session(token)
        logger.info("session_revoked")

    def revoke_all(self, user_id: str, *, except_token: Optional[str] = None) -> int:
        count = self.store.revoke_user_sessions(user_id, except_token=except_token)
        if count:
            logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count
