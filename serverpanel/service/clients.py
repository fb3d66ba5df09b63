from __future__ import annotations

import secrets
import uuid
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from serverpanel.logging import get_logger
from serverpanel.service.errors import AuthenticationError, NotFoundError
from serverpanel.service.notifications import Outbox
from serverpanel.storage.models import OAuthClient, User

logger = get_logger(__name__)

CLIENT_SECRET_LENGTH = 36


class ClientStore(Protocol):
    def save_client(self, client: OAuthClient) -> OAuthClient: ...

    def get_client(self, client_id: str) -> Optional[OAuthClient]: ...

    def list_clients(self, user_id: str) -> List[OAuthClient]: ...

    def delete_client(self, client_id: str) -> None: ...


def generate_client_secret(length: int = CLIENT_SECRET_LENGTH) -> str:
    # token_urlsafe yields about 4/3 chars per byte; trim to the exact length
    return secrets.token_urlsafe(length)[:length]


class ClientService:
    """OAuth2 clients owned by a user, either account-level or bound to a server."""

    def __init__(self, store: ClientStore) -> None:
        self.store = store
        self._secret_hasher = PasswordHasher(type=Type.ID)

    def create(
        self,
        user: User,
        *,
        name: str = "",
        description: str = "",
        server_id: str = "",
        outbox: Optional[Outbox] = None,
    ) -> Tuple[OAuthClient, str]:
        """Create a client and return it with its plaintext secret.

        The secret is only stored hashed and cannot be shown again.
        """
        secret = generate_client_secret()
        client = OAuthClient(
            client_id=str(uuid.uuid4()),
            user_id=user.id,
            name=name,
            description=description,
            server_id=server_id,
            secret_hash=self._secret_hasher.hash(secret),
        )
        self.store.save_client(client)
        if outbox is not None:
            outbox.queue(user.email, "oauthCreated")
        logger.info("oauth_client_created", user_id=user.id, client_id=client.client_id)
        return client, secret

    def list_personal(self, user: User) -> List[OAuthClient]:
        return [c for c in self.store.list_clients(user.id) if not c.server_id]

    def delete_personal(self, user: User, client_id: str, *, outbox: Optional[Outbox] = None) -> None:
        client = self.store.get_client(client_id)
        # Server-bound clients and other users' clients are reported as missing
        if client is None or client.user_id != user.id or client.server_id:
            raise NotFoundError("client not found")
        self.store.delete_client(client.client_id)
        if outbox is not None:
            outbox.queue(user.email, "oauthDeleted")
        logger.info("oauth_client_deleted", user_id=user.id, client_id=client.client_id)

    def authenticate(self, client_id: str, client_secret: str) -> OAuthClient:
        client = self.store.get_client(client_id) if client_id else None
        if client is None or not client_secret:
            raise AuthenticationError("invalid client credentials")
        try:
            self._secret_hasher.verify(client.secret_hash, client_secret)
        except VerifyMismatchError as exc:
            logger.info("oauth_client_auth_failed", client_id=client_id)
            raise AuthenticationError("invalid client credentials") from exc
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("oauth_client_secret_unverifiable", client_id=client_id)
            raise AuthenticationError("invalid client credentials") from exc
        return client
