from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` rendered in the error envelope:
    - validation_error, field_required, invalid_credentials, token_malformed (400)
    - unauthorized, token_invalid, token_expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class FieldRequiredError(ValidationError):
    """A required request field was missing or empty (400)."""
    error_code = "field_required"

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{field} is required", detail={"field": field})
        self.field = field


class InvalidCredentialsError(ValidationError):
    """A password or one-time code did not match (400)."""
    error_code = "invalid_credentials"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class OtpStateError(ConflictError):
    """An OTP operation was attempted from a state that does not allow it."""


class TokenError(ServiceError):
    """Base class for access token decoding failures."""


class MalformedTokenError(TokenError):
    """Token is not a well-formed compact JWS with a readable payload (400)."""
    status_code = 400
    error_code = "token_malformed"


class InvalidSignatureError(TokenError):
    """Token signature does not verify under the configured key (401)."""
    status_code = 401
    error_code = "token_invalid"


class ExpiredTokenError(TokenError):
    """Token verified but its expiry is not in the future (401)."""
    status_code = 401
    error_code = "token_expired"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class SigningError(ServerError):
    """Claims could not be signed with the configured key and algorithm."""


class IssuanceError(ServerError):
    """Token issuance failed."""


class InternalError(ServerError):
    """A collaborator failed while completing a request."""


class UnknownError(ServerError):
    """Expected request context was missing when an operation ran."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "FieldRequiredError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "OtpStateError",
    "TokenError",
    "MalformedTokenError",
    "InvalidSignatureError",
    "ExpiredTokenError",
    "ServerError",
    "SigningError",
    "IssuanceError",
    "InternalError",
    "UnknownError",
]
