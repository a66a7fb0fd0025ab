"""Tests for the identity guards."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from litestar.exceptions import NotAuthorizedException, PermissionDeniedException

from imagepipe.auth.guards import (
    Identity,
    Role,
    auth_guard,
    get_identity,
    identity_id,
    require,
)


def _connection(user=None):
    connection = MagicMock()
    connection.scope = {} if user is None else {"user": user}
    return connection


class TestGetIdentity:
    def test_from_mapping(self):
        assert get_identity(_connection({"id": 7, "role": "staff"})) == Identity(id="7", role="staff")

    def test_from_object(self):
        user = SimpleNamespace(id="u-1", role="admin")
        assert get_identity(_connection(user)) == Identity(id="u-1", role="admin")

    def test_missing_user(self):
        assert get_identity(_connection()) is None

    def test_user_without_id(self):
        assert get_identity(_connection({"role": "staff"})) is None

    def test_missing_role_is_empty(self):
        assert get_identity(_connection({"id": "u-1"})).role == ""

    def test_identity_id(self):
        assert identity_id(_connection({"id": "u-1"})) == "u-1"
        assert identity_id(_connection()) is None


class TestRequirements:
    @pytest.mark.asyncio
    async def test_role_matches(self):
        assert await Role("designer", "manager").check(Identity("u", "designer")) is True
        assert await Role("designer").check(Identity("u", "customer")) is False

    @pytest.mark.asyncio
    async def test_admin_passes_any_role(self):
        assert await Role("designer").check(Identity("u", "admin")) is True

    @pytest.mark.asyncio
    async def test_require_returns_identity(self):
        identity = await require(_connection({"id": "u", "role": "admin"}), Role("admin"))
        assert identity == Identity("u", "admin")

    @pytest.mark.asyncio
    async def test_require_rejects_other_roles(self):
        with pytest.raises(PermissionDeniedException):
            await require(_connection({"id": "u", "role": "staff"}), Role("admin"))

    @pytest.mark.asyncio
    async def test_guard_rejects_anonymous(self):
        with pytest.raises(NotAuthorizedException):
            await Role("designer")(_connection(), None)

    @pytest.mark.asyncio
    async def test_guard_rejects_wrong_role(self):
        with pytest.raises(PermissionDeniedException):
            await Role("designer")(_connection({"id": "u", "role": "customer"}), None)

    @pytest.mark.asyncio
    async def test_guard_accepts_role(self):
        await Role("designer")(_connection({"id": "u", "role": "designer"}), None)


class TestAuthGuard:
    @pytest.mark.asyncio
    async def test_rejects_anonymous(self):
        with pytest.raises(NotAuthorizedException):
            await auth_guard(_connection(), None)

    @pytest.mark.asyncio
    async def test_accepts_any_identity(self):
        await auth_guard(_connection({"id": "u-1", "role": "customer"}), None)
