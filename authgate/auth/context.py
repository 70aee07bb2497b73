"""
Auth service container.

Holds the explicitly constructed auth components and their owned state
(JWKS cache, user store). One instance is built per application in the
lifespan handler and stored on ``app.state.auth``; tests build their own
with fakes.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import HTTPException, Request, status

from authgate.auth.entra import EntraIdClient
from authgate.auth.session import SessionTokenService
from authgate.auth.users import InMemoryUserStore, UserService, UserStore
from authgate.auth.verifier import IdentityTokenVerifier, JwksCache
from authgate.config import Settings


@dataclass
class AuthServices:
    settings: Settings
    entra: EntraIdClient
    verifier: IdentityTokenVerifier
    users: UserService
    sessions: SessionTokenService


def build_auth_services(
    settings: Settings,
    http_client: httpx.AsyncClient,
    store: Optional[UserStore] = None,
) -> AuthServices:
    """
    Wire the auth components together.

    Args:
        settings: Application settings
        http_client: Shared client for both provider calls (code exchange
            and JWKS); its timeout bounds every outbound request
        store: User store; defaults to a fresh InMemoryUserStore

    Returns:
        AuthServices ready to attach to ``app.state.auth``
    """
    jwks_cache = JwksCache(
        http_client,
        settings.jwks_uri,
        ttl_seconds=settings.JWKS_CACHE_SECONDS,
    )

    return AuthServices(
        settings=settings,
        entra=EntraIdClient(settings, http_client),
        verifier=IdentityTokenVerifier(settings, jwks_cache),
        users=UserService(settings, store if store is not None else InMemoryUserStore()),
        sessions=SessionTokenService(settings),
    )


def get_auth_services(request: Request) -> AuthServices:
    """
    Dependency to get the auth services from app state.

    Raises:
        HTTPException: 503 if the application has not finished starting
    """
    services = getattr(request.app.state, "auth", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication services not initialized",
        )

    return services
