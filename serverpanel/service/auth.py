from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from serverpanel.logging import get_logger
from serverpanel.service.errors import FieldRequiredError, InvalidCredentialsError
from serverpanel.service.notifications import Outbox
from serverpanel.service.permissions import DEFAULT_USER_SCOPES, PermissionResolver
from serverpanel.storage.models import (
    OAuthClient,
    OtpEnrollment,
    Permissions,
    RefreshTokenRecord,
    Session,
    User,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    """Persistence operations the authentication services rely on."""

    def create_user(self, username: str, email: str, *, meta: Optional[dict] = None) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...

    def get_permissions(
        self, user_id: str, server_id: Optional[str] = None
    ) -> Optional[Permissions]: ...

    def set_permissions(
        self, user_id: str, scopes: List[str], server_id: Optional[str] = None
    ) -> Permissions: ...

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

    def save_client(self, client: OAuthClient) -> OAuthClient: ...

    def get_client(self, client_id: str) -> Optional[OAuthClient]: ...

    def list_clients(self, user_id: str) -> List[OAuthClient]: ...

    def delete_client(self, client_id: str) -> None: ...

    def save_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def pop_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...

    def get_otp_enrollment(self, user_id: str) -> OtpEnrollment: ...

    def save_otp_enrollment(self, enrollment: OtpEnrollment) -> OtpEnrollment: ...


class UserService:
    """User accounts and their argon2id password credentials."""

    def __init__(self, store: AuthStore, permissions: PermissionResolver) -> None:
        self.store = store
        self.permissions = permissions
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        scopes: Optional[Iterable[str]] = None,
    ) -> User:
        for name, value in (("username", username), ("email", email), ("password", password)):
            if not value:
                raise FieldRequiredError(name)
        user = self.store.create_user(username, email.strip().lower())
        self.save_password(user.id, password)
        granted = list(scopes) if scopes is not None else list(DEFAULT_USER_SCOPES)
        self.permissions.grant(user.id, granted)
        self.logger.info("user_created", user_id=user.id, scopes=granted)
        return user

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def authenticate(self, email: str, password: str) -> User:
        """Resolve a user from email and password or raise InvalidCredentialsError."""
        if not email:
            raise FieldRequiredError("email")
        if not password:
            raise FieldRequiredError("password")
        user = self.store.get_user_by_email(email.strip().lower())
        if user is None or not self.verify_password(user.id, password):
            self.logger.info("login_failed")
            raise InvalidCredentialsError("invalid email or password")
        return user

    def update_self(
        self,
        user: User,
        *,
        password: str,
        outbox: Outbox,
        username: Optional[str] = None,
        email: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> User:
        """Apply a user's own account changes after re-checking their password.

        The old address is told about an email change and the (new) address is
        told about a password change; both go out after the request completes.
        """
        if not password:
            raise FieldRequiredError("password")
        if not self.verify_password(user.id, password):
            raise InvalidCredentialsError("invalid password")

        old_email = user.email
        updated = replace(
            user,
            username=username or user.username,
            email=email.strip().lower() if email else user.email,
        )
        user = self.store.update_user(updated)
        if new_password:
            self.save_password(user.id, new_password)

        if user.email != old_email:
            outbox.queue(old_email, "emailChanged", {"NEW_EMAIL": user.email})
        if new_password:
            outbox.queue(user.email, "passwordChanged")
        self.logger.info(
            "user_self_updated",
            user_id=user.id,
            email_changed=user.email != old_email,
            password_changed=bool(new_password),
        )
        return user
