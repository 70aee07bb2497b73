"""
Configuration module for the authgate service.

This module uses Pydantic Settings to load and validate environment variables
for Microsoft Entra ID (OIDC) authentication, session JWT management,
role/permission mapping, cookie policy and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from typing import Dict, List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

DEFAULT_ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "admin": [
        "read:documents",
        "write:documents",
        "delete:documents",
        "manage:users",
        "manage:rag",
        "manage:roles",
    ],
    "analyst": [
        "read:documents",
        "write:documents",
        "query:rag",
        "export:documents",
    ],
    "viewer": ["read:documents", "query:rag"],
}


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for Entra ID (OIDC), session JWTs, RBAC mappings,
    cookies and outbound HTTP policy is defined here.
    """

    # =========================================================================
    # Entra ID Configuration (OIDC Authentication)
    # =========================================================================

    AZURE_TENANT_ID: str = Field(
        ...,
        description="Entra ID Tenant ID (GUID format)",
        min_length=36,
        max_length=36,
    )

    AZURE_CLIENT_ID: str = Field(
        ...,
        description="Entra ID Application (Client) ID",
        min_length=36,
        max_length=36,
    )

    AZURE_CLIENT_SECRET: str = Field(
        ...,
        description="Entra ID client secret (confidential client, server-side only)",
        min_length=1,
    )

    AZURE_REDIRECT_URI: str = Field(
        ...,
        description="Redirect URI registered in Entra ID (frontend callback page)",
        min_length=1,
    )

    AZURE_SCOPES: str = Field(
        default="openid profile email",
        description="Space-separated scopes requested during login and code exchange",
    )

    AZURE_AUTHORITY_HOST: str = Field(
        default="https://login.microsoftonline.com",
        description="Entra ID authority host (override for sovereign clouds)",
    )

    # =========================================================================
    # Session JWT Configuration
    # =========================================================================

    SESSION_JWT_SECRET: str = Field(
        ...,
        description="Secret key for signing session JWTs (must be cryptographically secure)",
        min_length=32,
    )

    SESSION_JWT_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm (HS256, HS384, or HS512)",
    )

    SESSION_JWT_EXPIRY_MINUTES: int = Field(
        default=60,
        description="Session JWT expiry time in minutes",
        ge=5,
        le=1440,  # Max 24 hours
    )

    SESSION_COOKIE_NAME: str = Field(
        default="app_session",
        description="Name of the HttpOnly cookie carrying the session JWT",
        min_length=1,
    )

    BACKEND_URL: str = Field(
        default="http://localhost:4000",
        description="Public URL of this service, used as the session JWT issuer",
    )

    FRONTEND_URL: str = Field(
        default="http://localhost:3000",
        description="Frontend origin, used as the session JWT audience",
    )

    # =========================================================================
    # OAuth State (CSRF) Configuration
    # =========================================================================

    OAUTH_STATE_SECRET: str = Field(
        ...,
        description="Secret used to sign the short-lived login state cookie",
        min_length=32,
    )

    OAUTH_STATE_MAX_AGE_SECONDS: int = Field(
        default=600,
        description="Lifetime of the stored state/nonce/PKCE verifier",
        ge=60,
        le=3600,
    )

    REQUIRE_OAUTH_STATE: bool = Field(
        default=True,
        description="Reject callbacks whose state does not match the stored login state",
    )

    # =========================================================================
    # Role-Based Access Control
    # =========================================================================

    ROLE_MAPPING: Dict[str, str] = Field(
        default_factory=lambda: {"admin": "admin", "viewer": "viewer"},
        description="JSON map of Entra ID app role / group name to internal role",
    )

    ROLE_PERMISSIONS: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_ROLE_PERMISSIONS.items()},
        description="JSON map of internal role to permission strings",
    )

    DEFAULT_ROLE: str = Field(
        default="viewer",
        description="Least-privileged role assigned when no provider role maps",
    )

    # =========================================================================
    # Outbound HTTP / JWKS Caching
    # =========================================================================

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache Entra ID JWKS keys in seconds",
        ge=300,  # Min 5 minutes
        le=86400,  # Max 24 hours
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for calls to the identity provider",
        gt=0,
        le=60,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    ENVIRONMENT: Literal["development", "production"] = Field(
        default="development",
        description="Deployment environment; controls cookie flags and error detail",
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra env vars not defined here
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def scopes_list(self) -> List[str]:
        return [scope for scope in self.AZURE_SCOPES.split() if scope]

    @property
    def azure_authority(self) -> str:
        """
        Construct the Entra ID authority URL.

        Returns:
            Full authority URL for OIDC endpoints.
        """
        return f"{self.AZURE_AUTHORITY_HOST.rstrip('/')}/{self.AZURE_TENANT_ID}"

    @property
    def expected_issuer(self) -> str:
        """Issuer claim carried by v2.0 ID tokens for this tenant."""
        return f"{self.azure_authority}/v2.0"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.azure_authority}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.azure_authority}/oauth2/v2.0/token"

    @property
    def jwks_uri(self) -> str:
        return f"{self.azure_authority}/discovery/v2.0/keys"

    @property
    def cookie_secure(self) -> bool:
        # HTTPS only in production
        return self.is_production

    @property
    def cookie_samesite(self) -> str:
        return "strict" if self.is_production else "lax"

    @property
    def session_expiry_seconds(self) -> int:
        return self.SESSION_JWT_EXPIRY_MINUTES * 60

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("SESSION_JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """
        Validate JWT algorithm is one of the supported HMAC algorithms.

        Args:
            v: JWT algorithm string

        Returns:
            Validated algorithm string

        Raises:
            ValueError: If algorithm is not supported
        """
        allowed_algorithms = ["HS256", "HS384", "HS512"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v

    @field_validator("AZURE_TENANT_ID", "AZURE_CLIENT_ID")
    @classmethod
    def validate_guid_format(cls, v: str) -> str:
        """
        Validate that Entra ID identifiers are in GUID format.

        Args:
            v: GUID string

        Returns:
            Validated GUID string (lowercased)

        Raises:
            ValueError: If not a valid GUID format
        """
        if not GUID_PATTERN.match(v):
            raise ValueError(
                f"Invalid GUID format: {v}. "
                "Expected format: xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"
            )

        return v.lower()

    @field_validator("BACKEND_URL", "FRONTEND_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_role_configuration(self) -> "Settings":
        """
        Ensure the RBAC maps are internally consistent.

        The default role and every mapping target must have a permission
        entry in ROLE_PERMISSIONS.
        """
        if self.DEFAULT_ROLE not in self.ROLE_PERMISSIONS:
            raise ValueError(
                f"DEFAULT_ROLE '{self.DEFAULT_ROLE}' is not defined in ROLE_PERMISSIONS"
            )

        undefined = sorted(
            {role for role in self.ROLE_MAPPING.values() if role not in self.ROLE_PERMISSIONS}
        )
        if undefined:
            raise ValueError(
                f"ROLE_MAPPING targets roles missing from ROLE_PERMISSIONS: {undefined}"
            )

        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    This is called during application startup to surface risky but
    technically valid configuration.

    Returns:
        Dictionary with validation status and any warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    if settings.SESSION_JWT_SECRET == settings.OAUTH_STATE_SECRET:
        warnings.append("OAUTH_STATE_SECRET should differ from SESSION_JWT_SECRET")

    if not settings.REQUIRE_OAUTH_STATE:
        warnings.append("REQUIRE_OAUTH_STATE is disabled; callback is exposed to login CSRF")

    if settings.is_production:
        if not settings.BACKEND_URL.startswith("https://"):
            errors.append("BACKEND_URL must use https:// in production")
        if not settings.AZURE_REDIRECT_URI.startswith("https://"):
            warnings.append("AZURE_REDIRECT_URI is not https:// in production")
        if settings.LOG_LEVEL.upper() == "DEBUG":
            warnings.append("LOG_LEVEL=DEBUG in production exposes error detail")

    if not settings.ROLE_MAPPING:
        warnings.append(
            f"ROLE_MAPPING is empty; every user receives '{settings.DEFAULT_ROLE}'"
        )

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "environment": settings.ENVIRONMENT,
        "jwt_expiry_minutes": settings.SESSION_JWT_EXPIRY_MINUTES,
    }
