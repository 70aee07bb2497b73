"""
Route Protection Tests

Tests authentication and authorization dependencies, both as pure checks
and mounted on routes.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import status

from authgate.auth.dependencies import (
    check_permissions,
    check_roles,
    require_all_permissions,
    require_roles,
)
from authgate.auth.exceptions import InsufficientRole, MissingPermission, NotAuthenticated
from authgate.models import EntraIdentity, InternalUser, SessionCredential


def make_credential(roles) -> SessionCredential:
    return SessionCredential(
        sub="u1",
        email="ada@example.com",
        name="Ada",
        displayName="Ada",
        roles=roles,
        iat=1700000000,
        exp=1700003600,
        iss="http://localhost:4000",
        aud="http://localhost:3000",
    )


def make_user(user_id: str = "u1", roles=None) -> InternalUser:
    return InternalUser(
        id=user_id,
        email=f"{user_id}@example.com",
        name="Test User",
        display_name="Test User",
        entra=EntraIdentity(oid=user_id),
        roles=roles or ["viewer"],
    )


def set_session(client, services, user: InternalUser, now=None) -> None:
    token, _ = services.sessions.issue(user, now=now)
    client.cookies.set(services.settings.SESSION_COOKIE_NAME, token)


# ============================================================================
# Pure checks
# ============================================================================

class TestCheckRoles:

    def test_overlap_permits(self):
        credential = make_credential(["viewer", "analyst"])
        assert check_roles(credential, ["admin", "analyst"]) is credential

    def test_disjoint_forbidden(self):
        with pytest.raises(InsufficientRole) as exc_info:
            check_roles(make_credential(["viewer"]), ["admin"])

        body = exc_info.value.to_dict()
        assert exc_info.value.status_code == 403
        assert body["error"] == "forbidden"
        assert body["message"] == "Insufficient role permissions"
        assert body["required"] == ["admin"]
        assert body["actual"] == ["viewer"]

    def test_no_identity(self):
        with pytest.raises(NotAuthenticated):
            check_roles(None, ["admin"])

    def test_factory_requires_roles(self):
        with pytest.raises(ValueError):
            require_roles()


class TestCheckPermissions:

    def test_all_present(self):
        credential = make_credential(["admin"])
        assert check_permissions(credential, {"a", "b", "c"}, ["a", "b"]) is credential

    def test_missing_reported(self):
        with pytest.raises(MissingPermission) as exc_info:
            check_permissions(make_credential(["viewer"]), {"a"}, ["a", "b", "c"])

        body = exc_info.value.to_dict()
        assert body["message"] == "Missing permission"
        assert body["required"] == ["a", "b", "c"]
        assert body["missing"] == ["b", "c"]

    def test_no_identity(self):
        with pytest.raises(NotAuthenticated):
            check_permissions(None, set(), ["a"])

    def test_factory_requires_permissions(self):
        with pytest.raises(ValueError):
            require_all_permissions()


# ============================================================================
# Mounted dependencies
# ============================================================================

class TestRequireUser:

    def test_missing_cookie(self, client):
        response = client.get("/auth/me")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "unauthorized"
        assert response.json()["reason"] == "no_session"

    def test_malformed_cookie(self, client, settings):
        client.cookies.set(settings.SESSION_COOKIE_NAME, "garbage.token.value")

        response = client.get("/auth/me")

        assert response.status_code == 401
        assert response.json()["reason"] == "invalid_session"

    def test_expired_cookie(self, client, services):
        set_session(client, services, make_user(), now=datetime.now(timezone.utc) - timedelta(hours=2))

        response = client.get("/auth/me")

        assert response.status_code == 401
        assert response.json()["reason"] == "session_expired"

    def test_valid_cookie(self, client, services):
        set_session(client, services, make_user(roles=["analyst"]))

        response = client.get("/auth/me")

        assert response.status_code == 200
        assert response.json() == {
            "id": "u1",
            "email": "u1@example.com",
            "name": "Test User",
            "displayName": "Test User",
            "roles": ["analyst"],
        }


class TestOptionalUser:

    def test_anonymous_proceeds(self, client):
        response = client.get("/whoami")

        assert response.status_code == 200
        assert response.json() == {"user": None}

    def test_invalid_session_proceeds_anonymously(self, client, settings):
        client.cookies.set(settings.SESSION_COOKIE_NAME, "garbage")

        assert client.get("/whoami").json() == {"user": None}

    def test_expired_session_proceeds_anonymously(self, client, services):
        set_session(client, services, make_user(), now=datetime.now(timezone.utc) - timedelta(hours=2))

        assert client.get("/whoami").json() == {"user": None}

    def test_identity_attached(self, client, services):
        set_session(client, services, make_user())

        assert client.get("/whoami").json() == {"user": "u1"}


class TestRoleRoutes:

    def test_admin_only_forbids_viewer(self, client, services):
        set_session(client, services, make_user(roles=["viewer"]))

        response = client.get("/admin/ping")

        assert response.status_code == 403
        assert response.json() == {
            "error": "forbidden",
            "message": "Insufficient role permissions",
            "required": ["admin"],
            "actual": ["viewer"],
        }

    def test_admin_only_permits_admin(self, client, services):
        set_session(client, services, make_user(roles=["admin"]))

        assert client.get("/admin/ping").status_code == 200

    def test_any_of_roles(self, client, services):
        set_session(client, services, make_user(roles=["analyst"]))

        assert client.get("/reports").status_code == 200

    def test_deactivated_admin_refused(self, client, services):
        user = make_user(roles=["admin"])

        async def deactivate():
            await services.users.store.upsert(user)
            await services.users.store.set_active(user.id, False)

        asyncio.run(deactivate())
        set_session(client, services, user)

        response = client.get("/admin/ping")

        assert response.status_code == 403
        assert response.json()["error"] == "account_disabled"
        assert client.get("/reports").status_code == 403

    def test_unauthenticated_gets_401_not_403(self, client):
        assert client.get("/admin/ping").status_code == 401


class TestPermissionRoutes:

    def test_permission_from_credential_roles(self, client, services):
        set_session(client, services, make_user(roles=["viewer"]))

        response = client.get("/documents")

        assert response.status_code == 200
        assert response.json() == {"owner": "u1"}

    def test_missing_one_of_all(self, client, services):
        set_session(client, services, make_user(roles=["viewer"]))

        response = client.delete("/documents/doc-1")

        assert response.status_code == 403
        assert response.json()["message"] == "Missing permission"
        assert response.json()["missing"] == ["delete:documents"]

    def test_all_permissions_present(self, client, services):
        set_session(client, services, make_user(roles=["admin"]))

        response = client.delete("/documents/doc-1")

        assert response.status_code == 200
        assert response.json() == {"deleted": "doc-1"}

    def test_deactivated_user_loses_permissions(self, client, services):
        user = make_user(roles=["admin"])

        async def deactivate():
            await services.users.store.upsert(user)
            await services.users.store.set_active(user.id, False)

        asyncio.run(deactivate())
        set_session(client, services, user)

        assert client.get("/documents").status_code == 403
