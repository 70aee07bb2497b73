"""
ID token verification and JWKS management.

This module handles:
- Fetching and caching the Entra ID JWKS (JSON Web Key Set)
- Verifying ID tokens from Microsoft Entra ID
- Validating token claims and signatures

This is the only place where external identity becomes trusted data.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from jose import jwk, jwt
from jose.exceptions import ExpiredSignatureError, JWKError, JWTClaimsError, JWTError
from pydantic import ValidationError

from authgate.auth.exceptions import IdentityTokenInvalid, UnknownSigningKey
from authgate.config import Settings
from authgate.models import ProviderIdentityClaims

logger = logging.getLogger(__name__)

JwkSet = Dict[str, Dict[str, Any]]


# =============================================================================
# JWKS Cache
# =============================================================================

class JwksCache:
    """
    TTL cache of the provider's signing keys, indexed by ``kid``.

    The cached entry is a single ``(keys, fetched_at)`` tuple replaced by
    assignment, so concurrent readers see either the old or the new key set.
    No lock is held across the network call; two requests refreshing at once
    just fetch the same document twice.

    Args:
        http_client: Shared httpx.AsyncClient with a bounded timeout
        jwks_uri: Provider JWKS endpoint
        ttl_seconds: How long a fetched key set is served from cache
        min_refresh_interval: Minimum age before a forced refresh refetches
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        jwks_uri: str,
        ttl_seconds: int = 3600,
        min_refresh_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._http = http_client
        self._jwks_uri = jwks_uri
        self._ttl = ttl_seconds
        self._min_refresh_interval = min_refresh_interval
        self._clock = clock
        self._entry: Optional[Tuple[JwkSet, float]] = None

    async def get_keys(self, force_refresh: bool = False) -> JwkSet:
        """
        Return the provider key set, fetching it when stale.

        Args:
            force_refresh: Bypass the TTL (used when a ``kid`` is unknown,
                in case keys were rotated). Still rate limited by
                ``min_refresh_interval``.

        Raises:
            IdentityTokenInvalid: Key set could not be fetched or parsed
        """
        entry = self._entry
        now = self._clock()

        if entry is not None:
            keys, fetched_at = entry
            age = now - fetched_at
            if not force_refresh and age < self._ttl:
                return keys
            if force_refresh and age < self._min_refresh_interval:
                return keys

        keys = await self._fetch()
        self._entry = (keys, self._clock())
        logger.info("Fetched JWKS", extra={"key_count": len(keys)})
        return keys

    def clear(self) -> None:
        self._entry = None

    async def _fetch(self) -> JwkSet:
        # Read-only and idempotent: one retry on transient failure
        last_error: Optional[Exception] = None

        for attempt in (1, 2):
            try:
                response = await self._http.get(self._jwks_uri)
            except httpx.TransportError as e:
                last_error = e
                logger.warning(
                    "JWKS fetch failed (attempt %d/2): %s", attempt, type(e).__name__
                )
                continue

            if response.status_code >= 500:
                last_error = httpx.HTTPStatusError(
                    f"JWKS endpoint returned {response.status_code}",
                    request=response.request,
                    response=response,
                )
                logger.warning(
                    "JWKS endpoint error (attempt %d/2): status=%s",
                    attempt,
                    response.status_code,
                )
                continue

            if not response.is_success:
                raise IdentityTokenInvalid(
                    f"Signing keys unavailable (status {response.status_code})"
                )

            try:
                jwks_data = response.json()
            except ValueError as e:
                raise IdentityTokenInvalid("Invalid JWKS response: not JSON") from e

            keys = jwks_data.get("keys") if isinstance(jwks_data, dict) else None
            if not isinstance(keys, list):
                raise IdentityTokenInvalid("Invalid JWKS response: missing 'keys' field")

            return {
                key["kid"]: key
                for key in keys
                if isinstance(key, dict) and key.get("kid")
            }

        logger.error("JWKS unavailable after retry", extra={"jwks_uri": self._jwks_uri})
        raise IdentityTokenInvalid("Signing keys unavailable") from last_error


# =============================================================================
# ID Token Verifier
# =============================================================================

class IdentityTokenVerifier:
    """
    Verifies Entra ID ID tokens and returns typed claims.

    Args:
        settings: Application settings (client id, tenant authority)
        jwks_cache: Key set source
        leeway_seconds: Clock skew tolerance for exp/nbf/iat
    """

    ALGORITHMS = ["RS256"]

    def __init__(self, settings: Settings, jwks_cache: JwksCache, leeway_seconds: int = 10):
        self._settings = settings
        self._jwks = jwks_cache
        self._leeway = leeway_seconds

    @property
    def expected_issuer(self) -> str:
        return self._settings.expected_issuer

    async def verify(
        self,
        id_token: str,
        expected_nonce: Optional[str] = None,
    ) -> ProviderIdentityClaims:
        """
        Verify and decode an ID token from Entra ID.

        This function performs comprehensive validation:
        1. Reads the unverified header to find the key id
        2. Finds the matching public key (refreshing JWKS once on a miss)
        3. Verifies the signature with the pinned algorithm
        4. Validates iss, aud, exp, nbf and iat
        5. Checks the nonce when one was issued at login
        6. Parses the payload into ProviderIdentityClaims

        Args:
            id_token: JWT ID token string from Entra ID
            expected_nonce: Nonce stored at login, if any

        Returns:
            Verified, typed claims

        Raises:
            UnknownSigningKey: No published key matches the token's kid
            IdentityTokenInvalid: Any other validation failure
        """
        if not id_token:
            raise IdentityTokenInvalid("Empty ID token")

        signing_key = await self._get_signing_key(id_token)

        try:
            public_key = jwk.construct(signing_key, algorithm=self.ALGORITHMS[0])
        except JWKError as e:
            raise IdentityTokenInvalid(f"Failed to construct public key from JWK: {e}") from e

        try:
            claims = jwt.decode(
                id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=self.ALGORITHMS,
                audience=self._settings.AZURE_CLIENT_ID,
                issuer=self.expected_issuer,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": True,
                    "verify_sub": True,
                    "verify_jti": False,
                    "verify_at_hash": False,
                    "require_aud": True,
                    "require_iat": True,
                    "require_exp": True,
                    "require_iss": True,
                    "leeway": self._leeway,
                },
            )
        except ExpiredSignatureError as e:
            raise IdentityTokenInvalid("ID token has expired") from e
        except JWTClaimsError as e:
            raise IdentityTokenInvalid(f"Invalid token claims: {e}") from e
        except JWTError as e:
            raise IdentityTokenInvalid(f"Token verification failed: {e}") from e

        if expected_nonce is not None and claims.get("nonce") != expected_nonce:
            raise IdentityTokenInvalid("Nonce mismatch")

        try:
            verified = ProviderIdentityClaims.model_validate(claims)
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
            raise IdentityTokenInvalid(f"ID token missing or malformed claims: {fields}") from e

        logger.debug("ID token verified", extra={"oid": verified.oid})
        return verified

    async def _get_signing_key(self, token: str) -> Dict[str, Any]:
        """
        Find the JWK matching the token's ``kid``.

        Raises:
            IdentityTokenInvalid: Malformed header or missing kid
            UnknownSigningKey: kid not published, even after a refresh
        """
        # Decode header without verification to get kid
        try:
            unverified_header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise IdentityTokenInvalid(f"Failed to decode token header: {e}") from e

        if unverified_header.get("alg") not in self.ALGORITHMS:
            raise IdentityTokenInvalid(
                f"Unexpected signing algorithm: {unverified_header.get('alg')}"
            )

        kid = unverified_header.get("kid")
        if not kid:
            raise IdentityTokenInvalid("Token header missing 'kid' (Key ID)")

        keys = await self._jwks.get_keys()
        signing_key = keys.get(kid)
        if signing_key is None:
            # Keys may have rotated since the last fetch
            keys = await self._jwks.get_keys(force_refresh=True)
            signing_key = keys.get(kid)

        if signing_key is None:
            logger.warning("ID token signed with unknown key", extra={"kid": kid})
            raise UnknownSigningKey(
                "Unable to find matching signing key in JWKS. "
                "Token may be from a different tenant or keys may have rotated."
            )

        return signing_key
