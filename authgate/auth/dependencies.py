"""
Authentication and authorization dependencies.

Authentication (session cookie → SessionCredential):
    require_user   - 401 when the cookie is missing, invalid or expired
    optional_user  - None instead of an error

Authorization (run after require_user):
    require_roles(*roles)             - caller needs at least one role
    require_permission(p)             - caller needs permission p
    require_all_permissions(*perms)   - caller needs every permission
    admin_only                        - require_roles("admin")

Usage:
    @router.get("/reports", dependencies=[Depends(require_roles("admin", "analyst"))])
    async def reports(): ...

    @router.delete("/documents/{doc_id}")
    async def delete(doc_id: str, user=Depends(require_permission("delete:documents"))): ...

Roles are taken from the signed credential, but a known user whose record
has been deactivated is refused by every guard. Permissions are evaluated per
request against the current role/permission configuration (see
UserService.resolve_permissions), so a permission-map change applies
without waiting for the session to expire.
"""

import logging
from typing import Callable, Collection, Iterable, Optional, Set

from fastapi import Depends, Request

from authgate.auth.context import AuthServices, get_auth_services
from authgate.auth.exceptions import (
    AccountDisabled,
    InsufficientRole,
    MissingPermission,
    NotAuthenticated,
    SessionTokenInvalid,
)
from authgate.models import SessionCredential

logger = logging.getLogger(__name__)


# =============================================================================
# Authentication
# =============================================================================

def _session_token(request: Request, services: AuthServices) -> Optional[str]:
    return request.cookies.get(services.settings.SESSION_COOKIE_NAME)


async def require_user(
    request: Request,
    services: AuthServices = Depends(get_auth_services),
) -> SessionCredential:
    """
    Required authentication.

    Reads the session JWT from the HttpOnly cookie, verifies it and attaches
    the credential to ``request.state.user``.

    Raises:
        NotAuthenticated: No session cookie
        SessionTokenExpired: Session expired
        SessionTokenInvalid: Session failed verification
    """
    token = _session_token(request, services)
    if not token:
        raise NotAuthenticated()

    credential = services.sessions.verify(token)
    request.state.user = credential
    return credential


async def optional_user(
    request: Request,
    services: AuthServices = Depends(get_auth_services),
) -> Optional[SessionCredential]:
    """
    Optional authentication.

    Attaches the credential if a valid session is present; otherwise the
    request continues anonymously and the handler branches on ``None``.
    """
    token = _session_token(request, services)
    if not token:
        return None

    try:
        credential = services.sessions.verify(token)
    except SessionTokenInvalid as e:
        logger.debug("Ignoring unusable session on optional route: %s", e.error_code)
        return None

    request.state.user = credential
    return credential


# =============================================================================
# Authorization checks
# =============================================================================

def check_roles(
    credential: Optional[SessionCredential],
    allowed_roles: Collection[str],
) -> SessionCredential:
    """
    Permit if the caller holds at least one of ``allowed_roles``.

    Raises:
        NotAuthenticated: No identity attached
        InsufficientRole: Role sets are disjoint (reports required vs. actual)
    """
    if credential is None:
        raise NotAuthenticated()

    if not set(credential.roles) & set(allowed_roles):
        logger.info(
            "Role check failed",
            extra={"user_id": credential.sub, "required": list(allowed_roles)},
        )
        raise InsufficientRole(required=allowed_roles, actual=credential.roles)

    return credential


def check_permissions(
    credential: Optional[SessionCredential],
    granted: Set[str],
    required: Iterable[str],
) -> SessionCredential:
    """
    Permit if every permission in ``required`` is in ``granted``.

    Raises:
        NotAuthenticated: No identity attached
        MissingPermission: At least one permission is missing
    """
    if credential is None:
        raise NotAuthenticated()

    required_list = list(required)
    missing = [p for p in required_list if p not in granted]
    if missing:
        logger.info(
            "Permission check failed",
            extra={"user_id": credential.sub, "missing": missing},
        )
        raise MissingPermission(required=required_list, missing=missing)

    return credential


# =============================================================================
# Dependency factories
# =============================================================================

def require_roles(*allowed_roles: str) -> Callable:
    """
    Role-based authorization dependency.

    Example:
        router.post("/admin/users", dependencies=[Depends(require_roles("admin"))])
    """
    if not allowed_roles:
        raise ValueError("require_roles needs at least one role")

    async def role_checker(
        credential: SessionCredential = Depends(require_user),
        services: AuthServices = Depends(get_auth_services),
    ) -> SessionCredential:
        if await services.users.is_disabled(credential.sub):
            raise AccountDisabled("Account is disabled")
        return check_roles(credential, allowed_roles)

    return role_checker


def require_all_permissions(*permissions: str) -> Callable:
    """
    Permission-based authorization dependency; the caller needs ALL of
    ``permissions``.
    """
    if not permissions:
        raise ValueError("require_all_permissions needs at least one permission")

    async def permission_checker(
        credential: SessionCredential = Depends(require_user),
        services: AuthServices = Depends(get_auth_services),
    ) -> SessionCredential:
        granted = await services.users.resolve_permissions(credential)
        return check_permissions(credential, granted, permissions)

    return permission_checker


def require_permission(permission: str) -> Callable:
    """Single-permission variant of require_all_permissions."""
    return require_all_permissions(permission)


admin_only = require_roles("admin")
