"""
FastAPI Application Factory
===========================

Main entry point for the authgate service, which sits between a browser
frontend and Microsoft Entra ID.

Architecture:
    Browser/Frontend → authgate (this service) → Microsoft Entra ID

Routers:
    - /auth/*       : Authentication flows (login, callback, logout, me, refresh)
    - /health       : Health check endpoint

Environment Variables Required:
    - AZURE_TENANT_ID: Microsoft Entra ID tenant ID
    - AZURE_CLIENT_ID: Microsoft Entra ID application client ID
    - AZURE_CLIENT_SECRET: Microsoft Entra ID client secret
    - AZURE_REDIRECT_URI: Redirect URI registered for the application
    - SESSION_JWT_SECRET: Secret for signing session JWTs
    - OAUTH_STATE_SECRET: Secret for signing the login-state cookie
    - ENVIRONMENT: development or production (cookie flags, error detail)
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn authgate.main:create_app --factory --reload --port 4000

    Production:
        uvicorn authgate.main:create_app --factory --host 0.0.0.0 --port 4000 --workers 4

Each worker owns its own JWKS cache and, with the default in-memory store,
its own user records.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from authgate import __version__
from authgate.auth import auth_router
from authgate.auth.context import AuthServices, build_auth_services
from authgate.auth.exceptions import AuthError
from authgate.config import Settings, get_settings, validate_configuration
from authgate.models import ErrorResponse, HealthResponse

logger = logging.getLogger(__name__)

LOGIN_STATE_COOKIE = "authgate_login"


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Report configuration warnings; refuse to start on errors
        - Create the shared outbound HTTP client (bounded timeout)
        - Build the auth components, unless they were injected

    Shutdown tasks:
        - Close the HTTP client created here
    """
    settings: Settings = app.state.settings

    setup_logging(settings.LOG_LEVEL)

    config_status = validate_configuration(settings)
    for warning in config_status["warnings"]:
        logger.warning("Configuration warning: %s", warning)
    if not config_status["valid"]:
        for error in config_status["errors"]:
            logger.error("Configuration error: %s", error)
        raise RuntimeError("Invalid configuration: " + "; ".join(config_status["errors"]))

    http_client: Optional[httpx.AsyncClient] = None
    if getattr(app.state, "auth", None) is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS)
        )
        app.state.auth = build_auth_services(settings, http_client)

    services: AuthServices = app.state.auth
    logger.info(
        "authgate service started",
        extra={
            "service": "authgate",
            "version": __version__,
            "environment": settings.ENVIRONMENT,
            "rbac": services.users.describe(),
        }
    )

    yield

    logger.info("Shutting down authgate service")
    if http_client is not None:
        await http_client.aclose()
        app.state.auth = None
        logger.info("Closed outbound HTTP client")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    services: Optional[AuthServices] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management
        - CORS middleware
        - Signed login-state session (state, nonce, PKCE verifier)
        - Route handlers
        - Exception handlers

    Args:
        settings: Settings override; defaults to get_settings()
        services: Pre-built auth components (tests); otherwise built at startup

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="authgate",
        description="OIDC login and session service for Microsoft Entra ID",
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.auth = services

    # Configure CORS (credentials are required for the session cookie)
    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    # Short-lived signed cookie holding the login state between
    # /auth/login and /auth/callback
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.OAUTH_STATE_SECRET,
        session_cookie=LOGIN_STATE_COOKIE,
        max_age=settings.OAUTH_STATE_MAX_AGE_SECONDS,
        same_site="lax",
        https_only=settings.is_production,
    )

    app.include_router(auth_router)

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns:
            Service status and basic metadata
        """
        return HealthResponse(status="ok", service="authgate", version=__version__)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        """Translate auth failures raised by dependencies and routes."""
        logger.info(
            "Request rejected: %s",
            exc.error_code,
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": exc.status_code,
            }
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error with its stack trace and returns a standardized
        error response without internal details.
        """
        logger.error(
            f"Unhandled exception: {type(exc).__name__}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        body = ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
            details={"detail": str(exc)} if settings.LOG_LEVEL.upper() == "DEBUG" else None,
        )
        return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))

    return app


if __name__ == "__main__":
    """
    Direct execution entry point: python -m authgate.main
    """
    settings = get_settings()

    uvicorn.run(
        "authgate.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=4000,
        log_level=settings.LOG_LEVEL.lower()
    )
