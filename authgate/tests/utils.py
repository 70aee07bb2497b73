"""
Shared test helpers: RSA test keys, ID token factory, and a fake Entra ID
served through httpx.MockTransport.
"""

import time
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import jwt
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from authgate.config import Settings

TENANT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
TEST_KID = "test-key-id-2024"
ROTATED_KID = "test-key-id-2025"

SESSION_SECRET = "test-session-secret-0123456789abcdef"
STATE_SECRET = "test-state-secret-0123456789abcdefgh"


# Test RSA key pair generation for mocking JWKS
def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return private_pem.decode(), public_pem.decode()


# Generate test keys once for reuse
TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()
OTHER_PRIVATE_KEY, OTHER_PUBLIC_KEY = generate_test_keys()


def make_settings(**overrides) -> Settings:
    """Settings for tests; never reads a .env file."""
    values: Dict[str, Any] = {
        "AZURE_TENANT_ID": TENANT_ID,
        "AZURE_CLIENT_ID": CLIENT_ID,
        "AZURE_CLIENT_SECRET": "test-client-secret",
        "AZURE_REDIRECT_URI": "http://localhost:3000/auth/callback",
        "SESSION_JWT_SECRET": SESSION_SECRET,
        "OAUTH_STATE_SECRET": STATE_SECRET,
        "ROLE_MAPPING": {
            "AdminGroup": "admin",
            "Analysts": "analyst",
            "admin": "admin",
            "viewer": "viewer",
        },
        "ENVIRONMENT": "development",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def create_mock_jwks(kid: str = TEST_KID, public_pem: str = TEST_PUBLIC_KEY) -> Dict[str, Any]:
    """
    Create mock JWKS response with public key.

    Args:
        kid: Key ID to include in JWKS
        public_pem: PEM public key to publish

    Returns:
        JWKS dictionary
    """
    public_key_obj = serialization.load_pem_public_key(
        public_pem.encode(),
        backend=default_backend()
    )

    jwk = RSAAlgorithm.to_jwk(public_key_obj, as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"

    return {"keys": [jwk]}


def default_id_claims(settings: Settings) -> Dict[str, Any]:
    now = int(time.time())
    return {
        "iss": settings.expected_issuer,
        "aud": settings.AZURE_CLIENT_ID,
        "sub": "pairwise-subject",
        "oid": "u1",
        "tid": TENANT_ID,
        "iat": now,
        "nbf": now,
        "exp": now + 3600,
        "name": "Ada Lovelace",
        "preferred_username": "Ada@Example.com",
        "roles": ["AdminGroup"],
    }


def create_id_token(
    settings: Settings,
    kid: str = TEST_KID,
    private_key: str = TEST_PRIVATE_KEY,
    algorithm: str = "RS256",
    **overrides,
) -> str:
    """
    Create an ID token signed with a test key.

    Overrides replace default claims; an override of None removes the claim.
    """
    claims = {**default_id_claims(settings), **overrides}
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode(claims, private_key, algorithm=algorithm, headers={"kid": kid})


class FakeEntraProvider:
    """
    Stand-in for the Entra ID token and JWKS endpoints.

    Use ``transport`` with an httpx.AsyncClient. Tests tweak the public
    attributes to simulate provider behavior.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.jwks: Dict[str, Any] = create_mock_jwks()
        self.jwks_status = 200
        self.jwks_transport_failures = 0
        self.jwks_requests = 0

        self.id_token_claims: Dict[str, Any] = {}
        self.id_token_kid = TEST_KID
        self.id_token_key = TEST_PRIVATE_KEY
        self.token_status = 200
        self.token_error: Optional[Dict[str, Any]] = None
        self.token_unreachable = False
        self.omit_id_token = False
        self.token_requests: List[Dict[str, str]] = []

        self.transport = httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == self.settings.jwks_uri:
            return self._jwks(request)
        if str(request.url) == self.settings.token_endpoint:
            return self._token(request)
        return httpx.Response(404, json={"error": "not_found"})

    def _jwks(self, request: httpx.Request) -> httpx.Response:
        self.jwks_requests += 1
        if self.jwks_transport_failures > 0:
            self.jwks_transport_failures -= 1
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.jwks_status, json=self.jwks)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.token_requests.append(form)

        if self.token_unreachable:
            raise httpx.ConnectTimeout("timed out", request=request)

        if self.token_status != 200:
            return httpx.Response(
                self.token_status,
                json=self.token_error or {
                    "error": "invalid_grant",
                    "error_description": "AADSTS70008: The authorization code has expired.",
                },
            )

        body: Dict[str, Any] = {
            "access_token": "provider-access-token",
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "openid profile email",
        }
        if not self.omit_id_token:
            body["id_token"] = create_id_token(
                self.settings,
                kid=self.id_token_kid,
                private_key=self.id_token_key,
                **self.id_token_claims,
            )
        return httpx.Response(200, json=body)


def start_login(client) -> Dict[str, str]:
    """Call /auth/login and return the state and nonce it issued."""
    response = client.get("/auth/login", follow_redirects=False)
    assert response.status_code == 302

    query = parse_qs(urlparse(response.headers["location"]).query)
    return {"state": query["state"][0], "nonce": query["nonce"][0]}


def sign_in(client, provider: FakeEntraProvider, code: str = "good-code", **claims):
    """Run login + callback against the fake provider; returns the callback response."""
    login = start_login(client)
    provider.id_token_claims.update({"nonce": login["nonce"], **claims})
    return client.post("/auth/callback", json={"code": code, "state": login["state"]})
