from __future__ import annotations

import base64
import hashlib
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from serverpanel.logging import get_logger
from serverpanel.storage.errors import ConstraintViolation, RecordNotFound
from serverpanel.storage.models import (
    OAuthClient,
    OtpEnrollment,
    OtpState,
    Permissions,
    RefreshTokenRecord,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for users, credentials, sessions and clients.

    Every public method takes the data lock, so single operations are atomic.
    Sequences of calls made by the services are not.
    """

    def __init__(self, *, otp_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.permissions: Dict[Tuple[str, Optional[str]], Permissions] = {}
        self.sessions: Dict[str, Session] = {}
        self.clients: Dict[str, OAuthClient] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.otp_enrollments: Dict[str, OtpEnrollment] = {}
        # RLock so nested acquisitions within one thread are allowed
        self._data_lock = threading.RLock()
        self._otp_cipher = Fernet(self._derive_cipher_key(otp_encryption_key))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    # users
    def create_user(self, username: str, email: str, *, meta: Optional[Dict] = None) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user.id})
            for other in self.users.values():
                if other.id == user.id:
                    continue
                if other.email == user.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if other.username == user.username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
            self.users[user.id] = user
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.otp_enrollments.pop(user_id, None)
            for key in [k for k in self.permissions if k[0] == user_id]:
                self.permissions.pop(key, None)
            for token in [t for t, s in self.sessions.items() if s.user_id == user_id]:
                self.sessions.pop(token, None)
            for client_id in [c for c, cl in self.clients.items() if cl.user_id == user_id]:
                self.clients.pop(client_id, None)
            for token in [t for t, r in self.refresh_tokens.items() if r.user_id == user_id]:
                self.refresh_tokens.pop(token, None)
            return True

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # permissions
    def set_permissions(
        self, user_id: str, scopes: List[str], server_id: Optional[str] = None
    ) -> Permissions:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            perms = Permissions(user_id=user_id, server_id=server_id, scopes=list(scopes))
            self.permissions[(user_id, server_id)] = perms
            return perms

    def get_permissions(
        self, user_id: str, server_id: Optional[str] = None
    ) -> Optional[Permissions]:
        with self._data_lock:
            return self.permissions.get((user_id, server_id))

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_seconds: int = 3600,
        *,
        scopes: Optional[List[str]] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self._drop_expired_sessions(utcnow())
            sess = Session.new(user_id, ttl_seconds, scopes=scopes)
            self.sessions[sess.token] = sess
            return sess

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(token)

    def revoke_session(self, token: str) -> None:
        with self._data_lock:
            self.sessions.pop(token, None)

    def revoke_user_sessions(self, user_id: str, *, except_token: Optional[str] = None) -> int:
        with self._data_lock:
            stale = [
                t for t, s in self.sessions.items() if s.user_id == user_id and t != except_token
            ]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    def _drop_expired_sessions(self, now: datetime) -> int:
        # Caller holds _data_lock
        stale = [t for t, s in self.sessions.items() if s.is_expired(now)]
        for token in stale:
            self.sessions.pop(token, None)
        return len(stale)

    def purge_expired_sessions(self) -> int:
        with self._data_lock:
            return self._drop_expired_sessions(utcnow())

    # oauth2 clients
    def save_client(self, client: OAuthClient) -> OAuthClient:
        with self._data_lock:
            if client.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": client.user_id})
            self.clients[client.client_id] = client
            return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._data_lock:
            return self.clients.get(client_id)

    def list_clients(self, user_id: str) -> List[OAuthClient]:
        with self._data_lock:
            results = [c for c in self.clients.values() if c.user_id == user_id]
            return sorted(results, key=lambda c: c.created_at)

    def delete_client(self, client_id: str) -> None:
        with self._data_lock:
            if self.clients.pop(client_id, None) is None:
                raise RecordNotFound("client not found", {"client_id": client_id})
            for token in [t for t, r in self.refresh_tokens.items() if r.client_id == client_id]:
                self.refresh_tokens.pop(token, None)

    # refresh tokens
    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            now = utcnow()
            for token in [t for t, r in self.refresh_tokens.items() if r.is_expired(now)]:
                self.refresh_tokens.pop(token, None)
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists")
            self.refresh_tokens[record.token] = record

    def pop_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        """Remove and return a refresh token record.

        None if it was never issued, already used, or has expired.
        """
        with self._data_lock:
            record = self.refresh_tokens.pop(token, None)
            if record is None or record.is_expired(utcnow()):
                return None
            return record

    # otp
    def _encrypt_otp_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._otp_cipher.encrypt(secret.encode()).decode()

    def _decrypt_otp_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        try:
            return self._otp_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("otp_secret_decrypt_failed")
            return None

    def get_otp_enrollment(self, user_id: str) -> OtpEnrollment:
        with self._data_lock:
            record = self.otp_enrollments.get(user_id)
            if not record:
                return OtpEnrollment(user_id=user_id)
            return replace(record, secret=self._decrypt_otp_secret(record.secret))

    def save_otp_enrollment(self, enrollment: OtpEnrollment) -> OtpEnrollment:
        with self._data_lock:
            if enrollment.user_id not in self.users:
                raise ConstraintViolation("user not found for otp", {"user_id": enrollment.user_id})
            if enrollment.state == OtpState.NOT_ENROLLED:
                self.otp_enrollments.pop(enrollment.user_id, None)
                return OtpEnrollment(user_id=enrollment.user_id)
            stored = replace(
                enrollment,
                secret=self._encrypt_otp_secret(enrollment.secret),
                updated_at=utcnow(),
            )
            self.otp_enrollments[enrollment.user_id] = stored
            return replace(stored, secret=enrollment.secret)
