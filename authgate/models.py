"""
Data Models Module

This module defines Pydantic models for request/response validation
and data serialization throughout the authgate service.

Models are organized by functional area:
- Identity provider models (token endpoint response, verified ID token claims)
- Internal identity models (application user, session credential)
- API models (callback request, user summary, auth/message/error responses)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Identity Provider Models
# ============================================================================

class ProviderTokenResponse(BaseModel):
    """
    Entra ID token endpoint response, received after code exchange.

    Transient: never persisted and never forwarded to the client.
    """
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., description="Opaque access token for provider APIs")
    id_token: str = Field(..., min_length=1, description="Signed ID token carrying user claims")
    refresh_token: Optional[str] = Field(None, description="Provider refresh token, if granted")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(default=0, description="Access token lifetime in seconds")
    ext_expires_in: Optional[int] = Field(None, description="Extended lifetime in seconds")
    scope: Optional[str] = Field(None, description="Granted scopes")

    def __repr__(self) -> str:
        # Token values stay out of logs and tracebacks
        return (
            f"ProviderTokenResponse(token_type={self.token_type!r}, "
            f"expires_in={self.expires_in!r}, scope={self.scope!r})"
        )

    __str__ = __repr__


class ProviderIdentityClaims(BaseModel):
    """
    Verified ID token payload from Entra ID.

    Only IdentityTokenVerifier builds these, and only after signature,
    issuer, audience and lifetime checks pass.
    """
    model_config = ConfigDict(extra="ignore")

    aud: str = Field(..., description="Audience (application client ID)")
    iss: str = Field(..., description="Issuer (tenant authority + /v2.0)")
    iat: int = Field(..., description="Issued-at (epoch seconds)")
    exp: int = Field(..., description="Expiry (epoch seconds)")
    nbf: Optional[int] = Field(None, description="Not-before (epoch seconds)")
    oid: str = Field(..., min_length=1, description="Stable per-user object identifier")
    tid: Optional[str] = Field(None, description="Tenant ID")
    email: Optional[str] = None
    upn: Optional[str] = Field(None, description="User Principal Name")
    preferred_username: Optional[str] = None
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    nonce: Optional[str] = None
    roles: List[str] = Field(default_factory=list, description="Provider app roles / groups")


# ============================================================================
# Internal Identity Models
# ============================================================================

class EntraIdentity(BaseModel):
    """Linkage between an internal user and their Entra ID principal."""
    oid: str = Field(..., description="Entra ID Object ID")
    upn: str = Field(default="", description="User Principal Name")
    roles: List[str] = Field(
        default_factory=list,
        description="Provider roles seen at last login (input to role derivation)",
    )


class InternalUser(BaseModel):
    """Application user, mapped from Entra ID claims."""
    id: str = Field(..., description="Internal user ID (derived 1:1 from oid)")
    email: str = Field(default="", description="Email address, empty if not provided")
    name: str = Field(default="User")
    display_name: str = Field(default="User")
    entra: EntraIdentity
    roles: List[str] = Field(default_factory=list, description="Internal role names")
    permissions: List[str] = Field(
        default_factory=list,
        description="Permissions derived from roles; never set independently",
    )
    last_login: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_active: bool = True


class SessionCredential(BaseModel):
    """
    Session JWT payload issued by this service.

    Never carries provider tokens, secrets or provider-internal claims.
    """
    model_config = ConfigDict(extra="ignore")

    sub: str = Field(..., description="Subject: internal user ID")
    email: str = ""
    name: str = ""
    displayName: str = ""
    roles: List[str] = Field(default_factory=list)
    iat: int
    exp: int
    iss: str
    aud: str


# ============================================================================
# API Models
# ============================================================================

class CallbackRequest(BaseModel):
    """OAuth callback payload posted by the frontend."""
    code: Optional[str] = Field(None, description="Authorization code from Entra ID")
    state: Optional[str] = Field(None, description="State parameter for CSRF protection")
    session_state: Optional[str] = Field(None, description="Entra ID SSO session state")


class UserSummary(BaseModel):
    """Public view of the authenticated user. Never includes permissions or tokens."""
    id: str
    email: str
    name: str
    displayName: str
    roles: List[str]

    @classmethod
    def from_user(cls, user: InternalUser) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            displayName=user.display_name,
            roles=list(user.roles),
        )

    @classmethod
    def from_credential(cls, credential: SessionCredential) -> "UserSummary":
        return cls(
            id=credential.sub,
            email=credential.email,
            name=credential.name,
            displayName=credential.displayName,
            roles=list(credential.roles),
        )


class AuthResponse(BaseModel):
    """Callback response body (the session JWT itself travels in the cookie)."""
    success: bool
    user: Optional[UserSummary] = None
    error: Optional[str] = None


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
