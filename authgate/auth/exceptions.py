"""
Authentication and authorization error taxonomy.

Every failure raised by the auth components is an ``AuthError`` carrying
the HTTP status it maps to and a stable machine-readable ``error_code``.
Components raise; the route layer and the FastAPI exception handler in
``authgate.main`` translate to responses.
"""

from typing import Any, Dict, List, Optional, Sequence


class AuthError(Exception):
    """Base exception for authentication/authorization failures."""

    status_code: int = 500
    error_code: str = "auth_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


# =============================================================================
# Provider-side failures (callback)
# =============================================================================

class TokenExchangeError(AuthError):
    """The token endpoint rejected the code/secret/redirect, or was unreachable."""

    status_code = 500
    error_code = "token_exchange_failed"

    def __init__(self, message: str, *, provider_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class IdentityTokenInvalid(AuthError):
    """The ID token failed signature or claim validation."""

    status_code = 500
    error_code = "identity_token_invalid"


class UnknownSigningKey(IdentityTokenInvalid):
    """The ID token's ``kid`` is not in the provider's published key set."""

    error_code = "unknown_signing_key"


class StateMismatchError(AuthError):
    """The callback ``state`` does not match the one issued at login."""

    status_code = 400
    error_code = "invalid_state"


# =============================================================================
# Session failures
# =============================================================================

class AuthenticationRequired(AuthError):
    """Base for 401 responses; ``reason`` tells the client why."""

    status_code = 401
    error_code = "unauthorized"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "unauthorized", "reason": self.error_code, "message": self.message}


class NotAuthenticated(AuthenticationRequired):
    """No session cookie (or no attached identity) on a protected route."""

    error_code = "no_session"

    def __init__(self, message: str = "Unauthorized: No session") -> None:
        super().__init__(message)


class SessionTokenInvalid(AuthenticationRequired):
    error_code = "invalid_session"


class SessionTokenExpired(SessionTokenInvalid):
    error_code = "session_expired"


# =============================================================================
# Authorization failures
# =============================================================================

class InsufficientRole(AuthError):
    """Caller's roles are disjoint from the endpoint's allow-list."""

    status_code = 403
    error_code = "forbidden"

    def __init__(self, required: Sequence[str], actual: Sequence[str]) -> None:
        super().__init__("Insufficient role permissions")
        self.required: List[str] = list(required)
        self.actual: List[str] = list(actual)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "required": self.required,
            "actual": self.actual,
        }


class MissingPermission(AuthError):
    """Caller lacks one or more required permissions."""

    status_code = 403
    error_code = "forbidden"

    def __init__(self, required: Sequence[str], missing: Sequence[str]) -> None:
        super().__init__("Missing permission")
        self.required: List[str] = list(required)
        self.missing: List[str] = list(missing)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "required": self.required,
            "missing": self.missing,
        }


class AccountDisabled(AuthError):
    """The user record exists but has been deactivated by an administrator."""

    status_code = 403
    error_code = "account_disabled"


__all__ = [
    "AuthError",
    "TokenExchangeError",
    "IdentityTokenInvalid",
    "UnknownSigningKey",
    "StateMismatchError",
    "AuthenticationRequired",
    "NotAuthenticated",
    "SessionTokenInvalid",
    "SessionTokenExpired",
    "InsufficientRole",
    "MissingPermission",
    "AccountDisabled",
]
