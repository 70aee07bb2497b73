"""
Entra ID OAuth client.

This module handles the server-side legs of the OAuth 2.0 authorization
code flow with Microsoft Entra ID:
- Building the authorization URL (with PKCE S256 challenge)
- Exchanging an authorization code for tokens using the confidential
  client secret

The client secret and the returned tokens are never logged.
"""

import base64
import hashlib
import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from authgate.auth.exceptions import TokenExchangeError
from authgate.config import Settings
from authgate.models import ProviderTokenResponse

logger = logging.getLogger(__name__)


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43-128 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


# =============================================================================
# Entra ID Client
# =============================================================================

class EntraIdClient:
    """
    Talks to the Entra ID authorize and token endpoints.

    Args:
        settings: Application settings (client id/secret, authority, redirect URI)
        http_client: Shared httpx.AsyncClient with a bounded timeout
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._http = http_client

    def build_authorization_url(
        self,
        state: str,
        nonce: str,
        code_challenge: Optional[str] = None,
    ) -> str:
        """
        Build the Entra ID authorization URL the browser is redirected to.

        Args:
            state: Opaque CSRF-binding value, echoed back by the provider
            nonce: Value the provider embeds in the ID token
            code_challenge: PKCE S256 challenge, if PKCE is used

        Returns:
            Absolute authorization URL
        """
        params = {
            "client_id": self._settings.AZURE_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self._settings.AZURE_REDIRECT_URI,
            "response_mode": "query",
            "scope": " ".join(self._settings.scopes_list),
            "state": state,
            "nonce": nonce,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"

        return f"{self._settings.authorize_endpoint}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        state: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> ProviderTokenResponse:
        """
        Exchange an authorization code for access and ID tokens.

        Authorization codes are single-use, so this call is never retried.
        ``state`` is accepted for tracing only; the caller validates it
        against the value issued at login.

        Args:
            code: Authorization code from the callback
            state: State echoed back by the frontend
            code_verifier: PKCE code verifier from the login leg

        Returns:
            Parsed token endpoint response

        Raises:
            TokenExchangeError: Provider unreachable, non-2xx response, or
                response missing id_token
        """
        payload = {
            "client_id": self._settings.AZURE_CLIENT_ID,
            "client_secret": self._settings.AZURE_CLIENT_SECRET,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._settings.AZURE_REDIRECT_URI,
            "scope": " ".join(self._settings.scopes_list),
        }
        if code_verifier:
            payload["code_verifier"] = code_verifier

        try:
            response = await self._http.post(
                self._settings.token_endpoint,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.error(
                "Token endpoint unreachable: %s",
                type(e).__name__,
                extra={"endpoint": self._settings.token_endpoint},
            )
            raise TokenExchangeError(
                "Unable to communicate with authentication service"
            ) from e

        if not response.is_success:
            error_msg = _provider_error_message(response)
            logger.warning(
                "Token exchange rejected by provider (status=%s): %s",
                response.status_code,
                error_msg,
            )
            raise TokenExchangeError(
                f"Token exchange failed: {error_msg}",
                provider_status=response.status_code,
            )

        try:
            tokens = ProviderTokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("Token endpoint returned an unusable response: %s", type(e).__name__)
            raise TokenExchangeError("Token response missing id_token") from e

        logger.info(
            "Authorization code exchanged",
            extra={"has_refresh_token": tokens.refresh_token is not None, "state_present": bool(state)},
        )
        return tokens


def _provider_error_message(response: httpx.Response) -> str:
    """Pull error_description / error out of an OAuth error body, if JSON."""
    if response.headers.get("content-type", "").startswith("application/json"):
        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        if isinstance(error_data, dict):
            return (
                error_data.get("error_description")
                or error_data.get("error")
                or "Token exchange failed"
            )
    return "Token exchange failed"
