"""
User Service

Maps verified Entra ID claims onto application users and applies RBAC.

Responsibilities:
- Map Entra ID roles/groups to internal roles (unmapped roles are dropped)
- Fall back to the least-privileged default role when nothing maps
- Compute permissions from roles (never stored independently)
- Upsert the user record keyed by the Entra ID object id
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from authgate.config import Settings
from authgate.models import (
    EntraIdentity,
    InternalUser,
    ProviderIdentityClaims,
    SessionCredential,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Claim Helpers
# =============================================================================

def extract_email_from_claims(claims: ProviderIdentityClaims) -> str:
    """
    Extract email address from ID token claims.

    Entra ID may use different claim names depending on configuration:
    - email: Email address (optional claim)
    - upn: User Principal Name
    - preferred_username: Usually the UPN (user@domain.com)

    Returns:
        Lowercased email address, or empty string if none is present
    """
    for candidate in (claims.email, claims.upn, claims.preferred_username):
        if candidate and "@" in candidate:
            return candidate.lower().strip()

    return ""


def get_user_display_name(claims: ProviderIdentityClaims) -> str:
    """
    Extract user's display name from claims.

    Returns:
        ``name``, else ``given_name family_name``, else "User"
    """
    if claims.name:
        return claims.name

    parts = [p for p in (claims.given_name, claims.family_name) if p]
    if parts:
        return " ".join(parts)

    return "User"


# =============================================================================
# User Store
# =============================================================================

class UserStore(Protocol):
    """
    Persistence collaborator for user records.

    Implementations must make ``upsert`` atomic per user id.
    """

    async def get(self, user_id: str) -> Optional[InternalUser]: ...

    async def upsert(self, user: InternalUser) -> InternalUser: ...

    async def set_active(self, user_id: str, is_active: bool) -> Optional[InternalUser]: ...


class InMemoryUserStore:
    """
    Process-local user store.

    Writes are serialized with an asyncio.Lock; the lock is only held around
    the dictionary mutation, never across I/O.
    """

    def __init__(self):
        self._users: Dict[str, InternalUser] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[InternalUser]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def upsert(self, user: InternalUser) -> InternalUser:
        """
        Insert or update a user record.

        An existing record keeps its ``is_active`` flag; deactivation is an
        administrative action and a login does not undo it.
        """
        async with self._lock:
            existing = self._users.get(user.id)
            if existing is not None:
                user = user.model_copy(update={"is_active": existing.is_active})
            self._users[user.id] = user
            return user.model_copy(deep=True)

    async def set_active(self, user_id: str, is_active: bool) -> Optional[InternalUser]:
        async with self._lock:
            existing = self._users.get(user_id)
            if existing is None:
                return None
            updated = existing.model_copy(update={"is_active": is_active})
            self._users[user_id] = updated
            logger.info(
                "User active flag changed",
                extra={"user_id": user_id, "is_active": is_active},
            )
            return updated.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._users)


# =============================================================================
# User Service
# =============================================================================

class UserService:
    """
    Role/permission derivation and user synchronization.

    Args:
        settings: Supplies ROLE_MAPPING, ROLE_PERMISSIONS and DEFAULT_ROLE
        store: User persistence collaborator
    """

    def __init__(self, settings: Settings, store: UserStore):
        self._role_mapping: Dict[str, str] = dict(settings.ROLE_MAPPING)
        self._role_permissions: Dict[str, List[str]] = {
            role: list(perms) for role, perms in settings.ROLE_PERMISSIONS.items()
        }
        self._default_role = settings.DEFAULT_ROLE
        self._store = store

    @property
    def store(self) -> UserStore:
        return self._store

    # -------------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------------

    def map_roles(self, provider_roles: Optional[Iterable[str]]) -> List[str]:
        """
        Map provider roles to a sorted, de-duplicated internal role list.

        Never returns an empty list: when nothing maps, the default
        least-privileged role is assigned.
        """
        mapped: Set[str] = set()
        for role in provider_roles or []:
            internal = self._role_mapping.get(role)
            if internal is None:
                logger.debug("Dropping unmapped provider role", extra={"provider_role": role})
                continue
            mapped.add(internal)

        if not mapped:
            return [self._default_role]

        return sorted(mapped)

    def permissions_for_roles(self, roles: Iterable[str]) -> List[str]:
        """
        Union of permissions over ``roles``.

        Example: "admin" has all permissions, "viewer" is read-only.
        """
        permissions: Set[str] = set()
        for role in roles:
            permissions.update(self._role_permissions.get(role, []))

        return sorted(permissions)

    # -------------------------------------------------------------------------
    # Synchronization
    # -------------------------------------------------------------------------

    async def sync_user(self, claims: ProviderIdentityClaims) -> InternalUser:
        """
        Create or update the application user from verified Entra ID claims.

        Deterministic for the same claims and configuration; only
        ``last_login`` differs between two calls.

        Args:
            claims: Verified token claims from Entra ID

        Returns:
            Application user with roles and permissions
        """
        roles = self.map_roles(claims.roles)
        display_name = get_user_display_name(claims)

        user = InternalUser(
            id=claims.oid,  # Entra ID OID is the internal ID
            email=extract_email_from_claims(claims),
            name=display_name,
            display_name=display_name,
            entra=EntraIdentity(
                oid=claims.oid,
                upn=claims.upn or claims.preferred_username or "",
                roles=list(claims.roles),
            ),
            roles=roles,
            permissions=self.permissions_for_roles(roles),
            last_login=datetime.now(timezone.utc),
            is_active=True,
        )

        stored = await self._store.upsert(user)
        logger.info(
            "User synchronized from Entra ID",
            extra={"user_id": stored.id, "roles": stored.roles},
        )
        return stored

    async def refresh_user(self, user_id: str) -> Optional[InternalUser]:
        """
        Re-run role/permission derivation from the latest stored record.

        Uses the provider roles captured at last login and the current
        role/permission configuration, then persists the result.

        Returns:
            Refreshed user, or None if the user is unknown
        """
        user = await self._store.get(user_id)
        if user is None:
            return None

        roles = self.map_roles(user.entra.roles)
        refreshed = user.model_copy(
            update={"roles": roles, "permissions": self.permissions_for_roles(roles)}
        )
        return await self._store.upsert(refreshed)

    async def get_user_with_permissions(self, user_id: str) -> Optional[InternalUser]:
        """
        Fetch a user with permissions recomputed under current configuration.

        Returns:
            User, or None if unknown
        """
        user = await self._store.get(user_id)
        if user is None:
            return None

        return user.model_copy(update={"permissions": self.permissions_for_roles(user.roles)})

    async def resolve_permissions(self, credential: SessionCredential) -> Set[str]:
        """
        Permission set for the caller behind ``credential``, evaluated now.

        Known users are resolved from their stored roles (an inactive user
        has no permissions); unknown users fall back to the roles embedded in
        the credential. Either way permissions come from the current
        ROLE_PERMISSIONS map, not from the token.
        """
        user = await self.get_user_with_permissions(credential.sub)
        if user is None:
            return set(self.permissions_for_roles(credential.roles))
        if not user.is_active:
            return set()

        return set(user.permissions)

    async def is_disabled(self, user_id: str) -> bool:
        """True only for a known user whose record has been deactivated."""
        user = await self._store.get(user_id)
        return user is not None and not user.is_active

    async def has_permission(self, user_id: str, permission: str) -> bool:
        user = await self.get_user_with_permissions(user_id)
        return bool(user and user.is_active and permission in user.permissions)

    def describe(self) -> Dict[str, Any]:
        """RBAC configuration summary for startup logging."""
        return {
            "mapped_provider_roles": sorted(self._role_mapping),
            "internal_roles": sorted(self._role_permissions),
            "default_role": self._default_role,
        }
