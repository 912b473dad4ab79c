"""
Shared fixtures for the OIDC bridge tests.

The identity provider is simulated with ``httpx.MockTransport``: discovery,
JWKS, token and userinfo endpoints answer from ``FakeIdentityProvider``,
which signs ID tokens with an RSA key generated once per test session.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from oidc_bridge.auth.cache import ClientCache
from oidc_bridge.auth.reconciler import CallbackReconciler
from oidc_bridge.auth.session import JwtSessionMinter
from oidc_bridge.config import Settings
from oidc_bridge.models import AuthRecord, OidcConfiguration, User
from oidc_bridge.storage import InMemoryConfigStore, InMemoryIdentityRepository


# =============================================================================
# Test Keys
# =============================================================================

def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return private_pem.decode(), private_key.public_key()


TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()
TEST_KID = "test-key-id-2024"

ISSUER = "https://idp.example"
CLIENT_ID = "abc"
CLIENT_SECRET = "s3cret"
REDIRECT_URI = "https://app/login"


def create_mock_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    jwk = RSAAlgorithm.to_jwk(TEST_PUBLIC_KEY, as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"
    return {"keys": [jwk]}


# =============================================================================
# Fake Identity Provider
# =============================================================================

class FakeIdentityProvider:
    """Scriptable OIDC provider served through httpx.MockTransport."""

    def __init__(self, issuer: str = ISSUER, client_id: str = CLIENT_ID):
        self.issuer = issuer
        self.client_id = client_id
        self.metadata: Dict[str, Any] = {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "userinfo_endpoint": f"{issuer}/userinfo",
            "jwks_uri": f"{issuer}/jwks",
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        }
        self.jwks = create_mock_jwks()
        self.discovery_status = 200
        self.id_token_claims: Dict[str, Any] = {"sub": "u1", "email": "jane@example.com", "name": "Jane"}
        self.include_id_token = True
        self.token_error: Optional[str] = None
        self.userinfo_claims: Dict[str, Any] = {}
        self.kid = TEST_KID

        self.discovery_calls = 0
        self.jwks_calls = 0
        self.userinfo_calls = 0
        self.requests: List[httpx.Request] = []
        self.token_requests: List[httpx.Request] = []

    @property
    def token_forms(self) -> List[Dict[str, str]]:
        return [dict(parse_qsl(r.content.decode())) for r in self.token_requests]

    def issue_id_token(self, claims: Mapping[str, Any], **overrides: Any) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "aud": self.client_id,
            "iat": now,
            "exp": now + timedelta(minutes=5),
        }
        payload.update(claims)
        payload.update(overrides)
        return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": self.kid})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/openid-configuration"):
            self.discovery_calls += 1
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status, json={"error": "unavailable"})
            return httpx.Response(200, json=self.metadata)
        if path == "/jwks":
            self.jwks_calls += 1
            return httpx.Response(200, json=self.jwks)
        if path == "/token":
            self.token_requests.append(request)
            if self.token_error:
                return httpx.Response(
                    400,
                    json={"error": self.token_error, "error_description": "grant rejected"},
                )
            body: Dict[str, Any] = {
                "access_token": "access-123",
                "token_type": "Bearer",
                "expires_in": 3600,
            }
            if self.include_id_token:
                body["id_token"] = self.issue_id_token(self.id_token_claims)
            return httpx.Response(200, json=body)
        if path == "/userinfo":
            self.userinfo_calls += 1
            if request.headers.get("Authorization") != "Bearer access-123":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo_claims)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# =============================================================================
# Repositories
# =============================================================================

class CountingRepository(InMemoryIdentityRepository):
    """In-memory repository that counts write calls."""

    def __init__(self):
        super().__init__()
        self.writes = 0

    async def patch_user(self, user_id: int, changes: Mapping[str, Any]) -> User:
        self.writes += 1
        return await super().patch_user(user_id, changes)

    async def insert_user(self, values: Mapping[str, Any]) -> User:
        self.writes += 1
        return await super().insert_user(values)

    async def patch_auth(self, auth_id: int, changes: Mapping[str, Any]) -> AuthRecord:
        self.writes += 1
        return await super().patch_auth(auth_id, changes)

    async def insert_auth(self, values: Mapping[str, Any]) -> AuthRecord:
        self.writes += 1
        return await super().insert_auth(values)

    @property
    def users(self) -> List[User]:
        return list(self._users.values())

    @property
    def auths(self) -> List[AuthRecord]:
        return list(self._auths.values())


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        SESSION_JWT_SECRET="test-jwt-secret-1234567890123456",
        SESSION_JWT_EXPIRY_MINUTES=60,
        JWT_ISSUER="oidc-bridge-test",
    )


@pytest.fixture
def oidc_config():
    return OidcConfiguration(
        enabled=True,
        issuer_url=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uri=REDIRECT_URI,
        auto_provision=True,
        default_role="user",
    )


@pytest.fixture
def fake_idp():
    return FakeIdentityProvider()


@pytest.fixture
def config_store(oidc_config):
    return InMemoryConfigStore(oidc_config)


@pytest.fixture
def repository():
    return CountingRepository()


@pytest.fixture
def client_cache(config_store, fake_idp):
    return ClientCache(config_store, timeout=5.0, transport=fake_idp.transport)


@pytest.fixture
def minter(settings):
    return JwtSessionMinter(settings)


@pytest.fixture
def reconciler(client_cache, repository, minter):
    return CallbackReconciler(client_cache, repository, minter)
