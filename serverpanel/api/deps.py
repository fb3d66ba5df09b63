from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from fastapi import BackgroundTasks, Depends, Header, Request

from serverpanel.logging import get_logger
from serverpanel.service.errors import AuthenticationError, ForbiddenError
from serverpanel.service.notifications import Outbox
from serverpanel.service.permissions import has_scope
from serverpanel.service.runtime import get_runtime
from serverpanel.service.tokens import verify
from serverpanel.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass
class Principal:
    """The authenticated caller of a request."""

    user: User
    scopes: List[str] = field(default_factory=list)
    # Set when authenticated by session cookie
    session_token: Optional[str] = None
    # Set when authenticated by bearer access token
    client_id: Optional[str] = None

    def has_scope(self, scope: str) -> bool:
        return has_scope(self.scopes, scope)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _principal_from_session(token: str) -> Principal:
    runtime = get_runtime()
    session = runtime.sessions.validate(token)
    user = runtime.store.get_user(session.user_id)
    if user is None:
        runtime.sessions.revoke(token)
        raise AuthenticationError("session user no longer exists")
    return Principal(user=user, scopes=list(session.scopes), session_token=token)


def _principal_from_access_token(token: str) -> Principal:
    runtime = get_runtime()
    claims = verify(token, runtime.token_config, now=utcnow())
    user = runtime.store.get_user(claims.user_id) if claims.user_id else None
    if user is None:
        raise AuthenticationError("access token user not found")
    return Principal(
        user=user,
        scopes=sorted(claims.scope_set),
        client_id=claims.client_id or None,
    )


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Principal:
    """Resolve the caller from the session cookie or a bearer access token."""
    cookie_name = get_runtime().settings.session_cookie_name
    session_token = request.cookies.get(cookie_name)
    bearer = _extract_bearer(authorization)
    if session_token:
        try:
            return _principal_from_session(session_token)
        except AuthenticationError:
            if not bearer:
                raise
            logger.info("session_cookie_rejected_trying_bearer")
    if bearer:
        return _principal_from_access_token(bearer)
    raise AuthenticationError("authentication required")


def require_scope(scope: str) -> Callable:
    """Dependency factory rejecting callers that lack ``scope``."""

    async def _check(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_scope(scope):
            logger.warning("scope_denied", user_id=principal.user.id, scope=scope)
            raise ForbiddenError(f"missing scope: {scope}", detail={"scope": scope})
        return principal

    return _check


def get_outbox(background_tasks: BackgroundTasks) -> Outbox:
    """Per-request outbox drained after the response has been sent."""
    outbox = Outbox()
    background_tasks.add_task(get_runtime().notifications.drain, outbox)
    return outbox
