from __future__ import annotations

from fastapi import Request, Response

SESSION_MAX_AGE_SECONDS = 3600


def expires_cookie_name(cookie_name: str) -> str:
    return f"{cookie_name}_expires"


def request_is_secure(request: Request) -> bool:
    """True when the request reached the app over TLS."""
    return request.url.scheme == "https"


def apply_session_cookies(
    response: Response,
    token: str,
    *,
    secure: bool,
    cookie_name: str,
    max_age: int = SESSION_MAX_AGE_SECONDS,
) -> None:
    """Set the session cookie pair.

    The session cookie is HttpOnly. Its ``_expires`` companion has an empty
    value and is readable by scripts so the UI can tell when the session
    lapses.
    """
    response.set_cookie(
        cookie_name,
        token,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
    )
    response.set_cookie(
        expires_cookie_name(cookie_name),
        "",
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=False,
    )


def clear_session_cookies(response: Response, *, secure: bool, cookie_name: str) -> None:
    response.delete_cookie(cookie_name, path="/", secure=secure, httponly=True)
    response.delete_cookie(expires_cookie_name(cookie_name), path="/", secure=secure)
