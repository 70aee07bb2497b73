"""
JWT Session Management Module
==============================

Handles creation and verification of session JWTs, and the HttpOnly
cookie that carries them.

- Tokens are signed with a symmetric server secret (HS256 by default)
- The lifetime is fixed by server configuration; clients cannot extend it
- Verification pins the configured algorithm, never the token header's
- Payload is a minimal projection of the user; never provider tokens
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
from fastapi import Response
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from pydantic import ValidationError

from authgate.auth.exceptions import SessionTokenExpired, SessionTokenInvalid
from authgate.config import Settings
from authgate.models import InternalUser, SessionCredential

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["sub", "exp", "iat", "iss", "aud"]


class SessionTokenService:
    """
    Issues and verifies application session JWTs.

    Args:
        settings: Supplies secret, algorithm, lifetime, issuer and audience
    """

    def __init__(self, settings: Settings):
        self._secret = settings.SESSION_JWT_SECRET
        self._algorithm = settings.SESSION_JWT_ALGORITHM
        self._expires_in = settings.session_expiry_seconds
        self._issuer = settings.BACKEND_URL
        self._audience = settings.FRONTEND_URL

    @property
    def expires_in(self) -> int:
        return self._expires_in

    # =========================================================================
    # Token Creation
    # =========================================================================

    def issue(self, user: InternalUser, now: Optional[datetime] = None) -> Tuple[str, int]:
        """
        Issue a session JWT for ``user``.

        Args:
            user: Application user with roles
            now: Issue time override (tests only)

        Returns:
            Tuple of (encoded JWT, lifetime in seconds)

        Example:
            >>> token, expires_in = service.issue(user)
        """
        issued_at = now or datetime.now(timezone.utc)

        payload = {
            "sub": user.id,
            "email": user.email,
            "name": user.name,
            "displayName": user.display_name,
            "roles": list(user.roles),
            "iat": issued_at,
            "exp": issued_at + timedelta(seconds=self._expires_in),
            "iss": self._issuer,
            "aud": self._audience,
        }

        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)

        logger.debug(
            "Created session JWT",
            extra={"user_id": user.id, "expires_in_seconds": self._expires_in},
        )
        return token, self._expires_in

    # =========================================================================
    # Token Verification
    # =========================================================================

    def verify(self, token: Optional[str]) -> SessionCredential:
        """
        Verify and decode a session JWT.

        Args:
            token: JWT string to verify

        Returns:
            The decoded credential

        Raises:
            SessionTokenExpired: Expiry is the only failing check
            SessionTokenInvalid: Any other failure (signature, algorithm,
                issuer, audience, malformed payload)
        """
        if not token:
            raise SessionTokenInvalid("No authentication token provided")

        try:
            decoded = self._decode(token, verify_exp=True)
        except ExpiredSignatureError:
            # Signature is already verified at this point; re-check the
            # remaining claims so "expired" means only expired.
            try:
                self._decode(token, verify_exp=False)
            except InvalidTokenError as e:
                logger.warning("Expired JWT also failed validation: %s", e)
                raise SessionTokenInvalid(f"Invalid token: {e}") from e
            logger.info("Session JWT expired")
            raise SessionTokenExpired("Token has expired")
        except InvalidTokenError as e:
            logger.warning("Invalid session JWT: %s", e)
            raise SessionTokenInvalid(f"Invalid token: {e}") from e

        try:
            credential = SessionCredential.model_validate(decoded)
        except ValidationError as e:
            raise SessionTokenInvalid("Invalid token: malformed session payload") from e

        logger.debug("JWT verified", extra={"user_id": credential.sub})
        return credential

    def _decode(self, token: str, verify_exp: bool) -> dict:
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self._algorithm],
            audience=self._audience,
            issuer=self._issuer,
            options={
                "verify_signature": True,
                "verify_exp": verify_exp,
                "verify_iat": True,
                "verify_iss": True,
                "verify_aud": True,
                "require": REQUIRED_CLAIMS,
            },
        )


# =============================================================================
# Cookie Helpers
# =============================================================================

def set_session_cookie(response: Response, settings: Settings, token: str, max_age: int) -> None:
    """Attach the session JWT as an HttpOnly cookie."""
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    """Expire the session cookie, using the same attributes it was set with."""
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
    )


__all__ = [
    "SessionTokenService",
    "set_session_cookie",
    "clear_session_cookie",
]
