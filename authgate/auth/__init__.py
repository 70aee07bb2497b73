"""
Authentication Package

This package handles authentication and authorization for the authgate
service using Microsoft Entra ID and OpenID Connect (OIDC).

Key responsibilities:
- OIDC login flow initiation and callback handling
- Code exchange against the Entra ID token endpoint
- ID token validation using JWKS from Microsoft Entra ID
- Role mapping and permission derivation (RBAC)
- Session JWT issuance and validation carried in an HttpOnly cookie
- Route protection dependencies (require_user, require_roles, ...)

Modules:
- routes: Public authentication endpoints (/auth/login, /auth/callback, etc.)
- entra: Authorization URL building and code exchange
- verifier: JWKS caching and ID token verification
- users: User synchronization and role/permission derivation
- session: Session JWT creation and validation, cookie helpers
- dependencies: FastAPI dependencies guarding application routes
- context: Per-application container for the components above

The authentication flow:
1. Browser is sent to /auth/login, which redirects to Entra ID
2. User authenticates with Microsoft Entra ID
3. Frontend posts the code and state to /auth/callback
4. Service exchanges the code, verifies the ID token, maps roles
5. Service issues a session JWT in an HttpOnly cookie
"""

from .dependencies import (
    admin_only,
    optional_user,
    require_all_permissions,
    require_permission,
    require_roles,
    require_user,
)
from .routes import auth_router

__all__ = [
    "auth_router",
    "require_user",
    "optional_user",
    "require_roles",
    "require_permission",
    "require_all_permissions",
    "admin_only",
]
