from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from serverpanel.storage.models import Permissions

SCOPE_LOGIN = "login"
SCOPE_SELF_EDIT = "self.edit"
SCOPE_SELF_CLIENTS = "self.clients"
SCOPE_ADMIN = "admin"
SCOPE_SERVERS_VIEW = "servers.view"
SCOPE_SERVERS_CREATE = "servers.create"
SCOPE_SERVERS_EDIT = "servers.edit"
SCOPE_SERVERS_DELETE = "servers.delete"
SCOPE_USERS_VIEW = "users.view"
SCOPE_USERS_EDIT = "users.edit"

DEFAULT_USER_SCOPES = [SCOPE_LOGIN, SCOPE_SELF_EDIT, SCOPE_SELF_CLIENTS]

ALL_SCOPES = [
    SCOPE_LOGIN,
    SCOPE_SELF_EDIT,
    SCOPE_SELF_CLIENTS,
    SCOPE_ADMIN,
    SCOPE_SERVERS_VIEW,
    SCOPE_SERVERS_CREATE,
    SCOPE_SERVERS_EDIT,
    SCOPE_SERVERS_DELETE,
    SCOPE_USERS_VIEW,
    SCOPE_USERS_EDIT,
]


class PermissionStore(Protocol):
    def get_permissions(
        self, user_id: str, server_id: Optional[str] = None
    ) -> Optional[Permissions]: ...

    def set_permissions(
        self, user_id: str, scopes: List[str], server_id: Optional[str] = None
    ) -> Permissions: ...


def has_scope(granted: Iterable[str], required: str) -> bool:
    """Admin implies every other scope."""
    granted = set(granted)
    return required in granted or SCOPE_ADMIN in granted


def intersect_scopes(requested: str, granted: Iterable[str]) -> List[str]:
    """Scopes named in ``requested`` that are also granted, in requested order.

    An empty request means everything granted.
    """
    granted_list = list(granted)
    wanted = [s for s in requested.replace(",", " ").split() if s]
    if not wanted:
        return granted_list
    return [s for s in dict.fromkeys(wanted) if has_scope(granted_list, s)]


class PermissionResolver:
    def __init__(self, store: PermissionStore) -> None:
        self.store = store

    def get_for_user_and_server(self, user_id: str, server_id: Optional[str] = None) -> Permissions:
        """Permissions of a user globally (``server_id`` None) or on one server.

        A user with no stored record has no scopes.
        """
        perms = self.store.get_permissions(user_id, server_id)
        if perms is None:
            return Permissions(user_id=user_id, server_id=server_id, scopes=[])
        return perms

    def grant(self, user_id: str, scopes: Iterable[str], server_id: Optional[str] = None) -> Permissions:
        current = self.get_for_user_and_server(user_id, server_id)
        merged = list(dict.fromkeys([*current.scopes, *scopes]))
        return self.store.set_permissions(user_id, merged, server_id)
