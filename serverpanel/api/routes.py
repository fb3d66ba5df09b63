from __future__ import annotations

import base64
import binascii
from typing import List, Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Form, Header, Path, Request, Response

from serverpanel.api.cookies import (
    apply_session_cookies,
    clear_session_cookies,
    request_is_secure,
)
from serverpanel.api.deps import Principal, get_outbox, get_principal, require_scope
from serverpanel.api.schemas import (
    ClientCreateRequest,
    ClientResponse,
    CreatedClientResponse,
    LoginRequest,
    OtpChallengeResponse,
    OtpStatusResponse,
    OtpValidateRequest,
    ScopesResponse,
    SelfUpdateRequest,
    TokenResponse,
    UserResponse,
)
from serverpanel.logging import get_logger
from serverpanel.service.errors import (
    AuthenticationError,
    FieldRequiredError,
    ForbiddenError,
    InvalidCredentialsError,
)
from serverpanel.service.notifications import Outbox
from serverpanel.service.permissions import (
    SCOPE_LOGIN,
    SCOPE_SELF_CLIENTS,
    SCOPE_SELF_EDIT,
    has_scope,
)
from serverpanel.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _no_content() -> Response:
    return Response(status_code=204)


def _user_to_response(user) -> UserResponse:
    return UserResponse(id=user.id, username=user.username, email=user.email)


def _basic_credentials(header: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Client id and secret from an HTTP Basic header, if one is present."""
    if not header:
        return None, None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic":
        return None, None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise AuthenticationError("malformed basic credentials") from exc
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise AuthenticationError("malformed basic credentials")
    # RFC 6749 2.3.1: both parts are form-urlencoded before encoding
    return unquote(client_id), unquote(client_secret)


@router.post("/auth/login", response_model=ScopesResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and start a browser session.

    Accounts with OTP enabled must also send the current code in ``otp``.
    """
    runtime = get_runtime()
    user = runtime.users.authenticate(body.email, body.password)
    if runtime.otp.get_status(user.id):
        if not body.otp:
            raise FieldRequiredError("otp")
        if not runtime.otp.verify_code(user.id, body.otp):
            logger.info("login_otp_rejected", user_id=user.id)
            raise InvalidCredentialsError("invalid otp code")
    perms = runtime.permissions.get_for_user_and_server(user.id, None)
    if not has_scope(perms.scopes, SCOPE_LOGIN):
        raise ForbiddenError("login is not permitted for this account")
    session = runtime.sessions.create_for_user(user, list(perms.scopes))
    apply_session_cookies(
        response,
        session.token,
        secure=request_is_secure(request),
        cookie_name=runtime.settings.session_cookie_name,
        max_age=runtime.settings.session_ttl_seconds,
    )
    logger.info("login_succeeded", user_id=user.id)
    return ScopesResponse(scopes=list(perms.scopes))


@router.post("/auth/reauth", response_model=ScopesResponse, tags=["auth"])
async def reauth(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    """Replace the caller's browser session with a fresh one. Bearer callers get 401."""
    if principal.session_token is None:
        raise AuthenticationError("re-authentication requires a session")
    runtime = get_runtime()
    result = runtime.sessions.reauthenticate(principal.user)
    apply_session_cookies(
        response,
        result.token,
        secure=request_is_secure(request),
        cookie_name=runtime.settings.session_cookie_name,
        max_age=runtime.settings.session_ttl_seconds,
    )
    return ScopesResponse(scopes=result.scopes)


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(request: Request):
    runtime = get_runtime()
    cookie_name = runtime.settings.session_cookie_name
    token = request.cookies.get(cookie_name)
    if token:
        runtime.sessions.revoke(token)
    response = _no_content()
    clear_session_cookies(response, secure=request_is_secure(request), cookie_name=cookie_name)
    return response


@router.post(
    "/oauth2/token",
    response_model=TokenResponse,
    response_model_exclude_none=True,
    tags=["oauth2"],
)
async def issue_token(
    response: Response,
    grant_type: str = Form(""),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    scope: str = Form(""),
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    otp: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    authorization: Optional[str] = Header(None),
):
    """OAuth2 token endpoint for client_credentials, password and refresh_token grants."""
    runtime = get_runtime()
    basic_id, basic_secret = _basic_credentials(authorization)
    client = runtime.clients.authenticate(
        basic_id or client_id or "", basic_secret or client_secret or ""
    )
    body = runtime.grants.grant(
        client,
        grant_type,
        scope=scope,
        username=username,
        password=password,
        otp=otp,
        refresh_token=refresh_token,
    )
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return TokenResponse(**body)


@router.get("/self", response_model=UserResponse, tags=["self"])
async def get_self(principal: Principal = Depends(require_scope(SCOPE_LOGIN))):
    return _user_to_response(principal.user)


@router.put("/self", status_code=204, tags=["self"])
async def update_self(
    body: SelfUpdateRequest,
    principal: Principal = Depends(require_scope(SCOPE_SELF_EDIT)),
    outbox: Outbox = Depends(get_outbox),
):
    """Update username, email or password; the current password is always required."""
    runtime = get_runtime()
    runtime.users.update_self(
        principal.user,
        password=body.password,
        outbox=outbox,
        username=body.username,
        email=body.email,
        new_password=body.new_password,
    )
    if body.new_password:
        runtime.sessions.revoke_all(principal.user.id, except_token=principal.session_token)
    return _no_content()


@router.get("/self/otp", response_model=OtpStatusResponse, tags=["self"])
async def get_otp_status(principal: Principal = Depends(require_scope(SCOPE_SELF_EDIT))):
    enabled = get_runtime().otp.get_status(principal.user.id)
    return OtpStatusResponse(otpEnabled=enabled)


@router.post("/self/otp", response_model=OtpChallengeResponse, tags=["self"])
async def start_otp_enroll(principal: Principal = Depends(require_scope(SCOPE_SELF_EDIT))):
    challenge = get_runtime().otp.start_enroll(principal.user)
    return OtpChallengeResponse(secret=challenge.secret, img=challenge.img)


@router.put("/self/otp", status_code=204, tags=["self"])
async def validate_otp_enroll(
    body: OtpValidateRequest,
    principal: Principal = Depends(require_scope(SCOPE_SELF_EDIT)),
    outbox: Outbox = Depends(get_outbox),
):
    get_runtime().otp.validate_enroll(principal.user, body.token, outbox)
    return _no_content()


@router.delete("/self/otp/{token}", status_code=204, tags=["self"])
async def disable_otp(
    token: str = Path(..., max_length=10),
    principal: Principal = Depends(require_scope(SCOPE_SELF_EDIT)),
    outbox: Outbox = Depends(get_outbox),
):
    get_runtime().otp.disable(principal.user, token, outbox)
    return _no_content()


@router.get("/self/oauth2", response_model=List[ClientResponse], tags=["self"])
async def list_personal_clients(
    principal: Principal = Depends(require_scope(SCOPE_SELF_CLIENTS)),
):
    clients = get_runtime().clients.list_personal(principal.user)
    return [
        ClientResponse(client_id=c.client_id, name=c.name, description=c.description)
        for c in clients
    ]


@router.post("/self/oauth2", response_model=CreatedClientResponse, tags=["self"])
async def create_personal_client(
    body: Optional[ClientCreateRequest] = None,
    principal: Principal = Depends(require_scope(SCOPE_SELF_CLIENTS)),
    outbox: Outbox = Depends(get_outbox),
):
    """Create an account-level client. The secret is returned once and never again."""
    body = body or ClientCreateRequest()
    client, secret = get_runtime().clients.create(
        principal.user,
        name=body.name,
        description=body.description,
        outbox=outbox,
    )
    return CreatedClientResponse(clientId=client.client_id, clientSecret=secret)


@router.delete("/self/oauth2/{client_id}", status_code=204, tags=["self"])
async def delete_personal_client(
    client_id: str,
    principal: Principal = Depends(require_scope(SCOPE_SELF_CLIENTS)),
    outbox: Outbox = Depends(get_outbox),
):
    get_runtime().clients.delete_personal(principal.user, client_id, outbox=outbox)
    return _no_content()
