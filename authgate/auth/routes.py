"""
Authentication routes for the OIDC authorization code flow.

This module implements login, callback, logout, current-user and session
refresh endpoints on top of Microsoft Entra ID.

Callback flow:
1. Frontend posts the authorization code and state it received from Entra ID
2. State is checked against the value stored at /auth/login (CSRF)
3. Code is exchanged for tokens server-side (client secret stays here)
4. ID token signature and claims are verified
5. Entra ID user is mapped to an internal user (RBAC applied)
6. A session JWT is issued; it never includes provider tokens
7. The JWT is set as an HttpOnly cookie, as the very last step
"""

import hmac
import logging
import secrets
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from authgate.auth.context import AuthServices, get_auth_services
from authgate.auth.dependencies import require_user
from authgate.auth.entra import generate_code_challenge, generate_code_verifier
from authgate.auth.exceptions import (
    AccountDisabled,
    AuthError,
    SessionTokenInvalid,
    StateMismatchError,
)
from authgate.auth.session import clear_session_cookie, set_session_cookie
from authgate.config import Settings
from authgate.models import (
    AuthResponse,
    CallbackRequest,
    MessageResponse,
    SessionCredential,
    UserSummary,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)

STATE_KEY = "oauth_state"
NONCE_KEY = "oauth_nonce"
VERIFIER_KEY = "code_verifier"


class CallbackStage(str, Enum):
    AWAITING_CODE = "awaiting_code"
    VALIDATING_STATE = "validating_state"
    EXCHANGING = "exchanging"
    VERIFYING_IDENTITY = "verifying_identity"
    SYNCING_USER = "syncing_user"
    ISSUING_SESSION = "issuing_session"
    COMMITTED = "committed"
    FAILED = "failed"


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(request: Request, services: AuthServices = Depends(get_auth_services)):
    """
    Initiate OIDC login by redirecting to Microsoft Entra ID.

    This endpoint:
    1. Generates secure state and nonce parameters
    2. Generates a PKCE verifier/challenge pair
    3. Stores state, nonce and verifier in the signed login-state cookie
    4. Redirects the browser to the Entra ID authorize endpoint

    Returns:
        RedirectResponse to the Microsoft authorization endpoint
    """
    state = secrets.token_urlsafe(32)
    nonce = secrets.token_urlsafe(32)
    code_verifier = generate_code_verifier()

    request.session[STATE_KEY] = state
    request.session[NONCE_KEY] = nonce
    request.session[VERIFIER_KEY] = code_verifier

    authorization_url = services.entra.build_authorization_url(
        state=state,
        nonce=nonce,
        code_challenge=generate_code_challenge(code_verifier),
    )

    logger.info("Redirecting to Entra ID for login")
    return RedirectResponse(url=authorization_url, status_code=302)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.post("/callback", response_model=AuthResponse)
async def callback(
    request: Request,
    payload: Any = Body(None),
    services: AuthServices = Depends(get_auth_services),
):
    """
    Complete the OAuth flow and establish a session.

    Body:
        code: Authorization code from Entra ID
        state: State parameter (must match the one stored at login)

    Returns:
        200 with the public user summary and the session cookie set;
        400 for a missing code or state mismatch; 500 for any provider or
        token failure (no cookie is set on any failure)
    """
    settings = services.settings
    stage = CallbackStage.AWAITING_CODE

    try:
        callback_request = CallbackRequest.model_validate(payload or {})
    except ValidationError:
        return _callback_error(400, "Invalid callback payload")

    if not callback_request.code:
        return _callback_error(400, "Missing authorization code")

    # Login state is single-use: consume it whatever the outcome
    expected_state = request.session.pop(STATE_KEY, None)
    nonce = request.session.pop(NONCE_KEY, None)
    code_verifier = request.session.pop(VERIFIER_KEY, None)

    try:
        stage = CallbackStage.VALIDATING_STATE
        if settings.REQUIRE_OAUTH_STATE:
            _validate_state(callback_request.state, expected_state)

        stage = CallbackStage.EXCHANGING
        tokens = await services.entra.exchange_code(
            callback_request.code,
            callback_request.state,
            code_verifier=code_verifier,
        )

        stage = CallbackStage.VERIFYING_IDENTITY
        claims = await services.verifier.verify(tokens.id_token, expected_nonce=nonce)

        stage = CallbackStage.SYNCING_USER
        user = await services.users.sync_user(claims)
        if not user.is_active:
            raise AccountDisabled("Account is disabled")

        stage = CallbackStage.ISSUING_SESSION
        session_token, expires_in = services.sessions.issue(user)

    except AuthError as e:
        logger.warning(
            "OAuth callback failed at %s: %s",
            stage.value,
            e.message,
            extra={"stage": stage.value, "error_code": e.error_code},
        )
        _log_transition(CallbackStage.FAILED)
        return _callback_error(e.status_code, _public_message(settings, e))
    except Exception:
        # Log the full error but don't expose details to the client
        logger.exception("Unexpected error in callback at %s", stage.value)
        _log_transition(CallbackStage.FAILED)
        return _callback_error(500, "Authentication failed")

    body = AuthResponse(success=True, user=UserSummary.from_user(user))
    response = JSONResponse(content=body.model_dump(exclude_none=True))
    set_session_cookie(response, settings, session_token, expires_in)

    _log_transition(CallbackStage.COMMITTED, user_id=user.id)
    return response


# =============================================================================
# Session Endpoints
# =============================================================================

@auth_router.post("/logout", response_model=MessageResponse)
async def logout(request: Request, services: AuthServices = Depends(get_auth_services)):
    """
    Clear the session cookie.

    Stateless: a copy of the token captured elsewhere remains valid until
    it expires.
    """
    request.session.clear()

    response = JSONResponse(
        content=MessageResponse(success=True, message="Logged out successfully").model_dump()
    )
    clear_session_cookie(response, services.settings)
    return response


@auth_router.get("/me", response_model=UserSummary)
async def me(credential: SessionCredential = Depends(require_user)):
    """Return the authenticated user's public fields."""
    return UserSummary.from_credential(credential)


@auth_router.post("/refresh", response_model=MessageResponse)
async def refresh(
    credential: SessionCredential = Depends(require_user),
    services: AuthServices = Depends(get_auth_services),
):
    """
    Re-issue the session with current data.

    Roles and permissions are re-derived from the latest user record, so a
    revoked role does not survive a refresh.
    """
    user = await services.users.refresh_user(credential.sub)
    if user is None:
        raise SessionTokenInvalid("Unknown user; please sign in again")
    if not user.is_active:
        raise AccountDisabled("Account is disabled")

    session_token, expires_in = services.sessions.issue(user)

    response = JSONResponse(
        content=MessageResponse(success=True, message="Token refreshed").model_dump()
    )
    set_session_cookie(response, services.settings, session_token, expires_in)

    logger.info("Session refreshed", extra={"user_id": user.id, "roles": user.roles})
    return response


# =============================================================================
# Helpers
# =============================================================================

def _validate_state(received: Optional[str], expected: Optional[str]) -> None:
    if not expected:
        raise StateMismatchError("Login session expired or missing; please sign in again")
    if not received or not hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
        raise StateMismatchError(
            "Invalid state parameter. This may be a CSRF attack or expired session."
        )


def _public_message(settings: Settings, error: AuthError) -> str:
    """Exception detail in development; generic text in production."""
    if error.status_code < 500 or not settings.is_production:
        return error.message
    return "Authentication failed"


def _callback_error(status_code: int, message: str) -> JSONResponse:
    body = AuthResponse(success=False, error=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _log_transition(stage: CallbackStage, **extra) -> None:
    logger.info("OAuth callback %s", stage.value, extra={"stage": stage.value, **extra})
