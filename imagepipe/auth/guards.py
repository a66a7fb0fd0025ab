"""Route guards over the identity set by the upstream auth middleware.

The middleware (not part of this service) stores the caller in
``scope["user"]`` as an object or mapping with ``id`` and ``role``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from litestar.connection import ASGIConnection
from litestar.exceptions import NotAuthorizedException, PermissionDeniedException
from litestar.handlers import BaseRouteHandler

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    id: str
    role: str


def get_identity(connection: ASGIConnection) -> Identity | None:
    """Read the caller from the scope, or ``None`` if unauthenticated."""
    user = connection.scope.get("user")
    if user is None:
        return None
    if isinstance(user, dict):
        user_id, role = user.get("id"), user.get("role")
    else:
        user_id, role = getattr(user, "id", None), getattr(user, "role", None)
    if not user_id:
        return None
    return Identity(id=str(user_id), role=str(role or ""))


async def require(connection: ASGIConnection, requirement: Role) -> Identity:
    """Check *requirement* inside a handler, for rules that depend on the request."""
    identity = get_identity(connection)
    if identity is None:
        raise NotAuthorizedException("Authentication required")
    if not await requirement.check(identity):
        raise PermissionDeniedException("Insufficient permissions")
    return identity


class Role:
    """Route guard passing callers with one of *names*. Admins always pass."""

    def __init__(self, *names: str) -> None:
        self.names = set(names)

    async def check(self, identity: Identity) -> bool:
        return identity.role == ADMIN_ROLE or identity.role in self.names

    async def __call__(self, connection: ASGIConnection, _: BaseRouteHandler) -> None:
        await require(connection, self)


async def auth_guard(connection: ASGIConnection, _: BaseRouteHandler) -> None:
    """Reject requests that carry no identity."""
    if get_identity(connection) is None:
        raise NotAuthorizedException("Authentication required")


def identity_id(connection: ASGIConnection) -> Any:
    identity = get_identity(connection)
    return identity.id if identity else None
