"""Pytest configuration and shared fixtures."""

import time
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import UUID

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt

from src.identity.config import Settings
from src.identity.main import app
from src.identity.services.auth.blocklist import InMemoryTokenBlocklist
from src.identity.services.auth.dependencies import build_auth_services, set_auth_services
from src.identity.services.auth.exceptions import ConflictError, UserNotFoundError
from src.identity.services.auth.id_token import APPLE_ISSUER
from src.identity.services.auth.models import User, normalize_email, utcnow
from src.identity.services.rate_limiter import limiter

APPLE_JWKS_URL = "https://appleid.apple.com/auth/keys"
APPLE_CLIENT_ID = "com.example.identity"
GOOGLE_CLIENT_ID = "google-client-id"


class InMemoryUserStore:
    """
    ``UserStore`` fake with the same uniqueness rules as the users table.

    Stored users are copied in and out so callers cannot mutate the store
    without going through ``update``.
    """

    def __init__(self) -> None:
        self.users: dict[UUID, User] = {}
        self.fail_with: Exception | None = None

    async def find_by_provider_identity(self, provider: str, subject_id: str) -> User:
        self._maybe_fail()
        for user in self.users.values():
            if user.auth_provider == provider and user.provider_id == subject_id:
                return user.model_copy(deep=True)
        raise UserNotFoundError(f"{provider}:{subject_id}")

    async def find_by_email(self, email: str) -> User:
        self._maybe_fail()
        for user in self.users.values():
            if user.email and user.email == normalize_email(email):
                return user.model_copy(deep=True)
        raise UserNotFoundError(email)

    async def find_by_id(self, user_id: UUID) -> User:
        self._maybe_fail()
        if user_id not in self.users:
            raise UserNotFoundError(str(user_id))
        return self.users[user_id].model_copy(deep=True)

    async def create(self, user: User) -> User:
        self._maybe_fail()
        self._check_unique(user)
        self.users[user.id] = user.model_copy(deep=True)
        return user.model_copy(deep=True)

    async def update(self, user: User) -> User:
        self._maybe_fail()
        if user.id not in self.users:
            raise UserNotFoundError(str(user.id))
        self._check_unique(user)
        user.updated_at = utcnow()
        self.users[user.id] = user.model_copy(deep=True)
        return user.model_copy(deep=True)

    def _check_unique(self, user: User) -> None:
        for other in self.users.values():
            if other.id == user.id:
                continue
            if user.email and other.email == user.email:
                raise ConflictError("User with this email already exists.")
            if (
                user.provider_id
                and other.auth_provider == user.auth_provider
                and other.provider_id == user.provider_id
            ):
                raise ConflictError("This social account is already linked to a user.")

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with


@dataclass
class SigningKeyPair:
    """A private key for minting identity tokens plus its public JWK."""

    kid: str
    algorithm: str
    private_pem: str
    public_jwk: dict[str, Any]

    def sign(self, claims: dict[str, Any], headers: dict[str, Any] | None = None) -> str:
        return jwt.encode(
            claims,
            self.private_pem,
            algorithm=self.algorithm,
            headers={"kid": self.kid, **(headers or {})},
        )


def _make_key_pair(kid: str, algorithm: str, private_key: Any) -> SigningKeyPair:
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_jwk = jwk.construct(private_pem, algorithm).public_key().to_dict()
    public_jwk.update({"kid": kid, "use": "sig", "alg": algorithm})
    return SigningKeyPair(kid=kid, algorithm=algorithm, private_pem=private_pem, public_jwk=public_jwk)


@pytest.fixture(scope="session")
def rsa_key() -> SigningKeyPair:
    """RS256 signing key published in the test key set."""
    return _make_key_pair("rsa-1", "RS256", rsa.generate_private_key(65537, 2048))


@pytest.fixture(scope="session")
def ec_key() -> SigningKeyPair:
    """ES256 signing key published in the test key set."""
    return _make_key_pair("ec-1", "ES256", ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture(scope="session")
def rogue_rsa_key() -> SigningKeyPair:
    """RSA key that is never published; reuses the published ``kid``."""
    return _make_key_pair("rsa-1", "RS256", rsa.generate_private_key(65537, 2048))


@pytest.fixture
def jwks_document(rsa_key, ec_key) -> dict[str, Any]:
    return {"keys": [rsa_key.public_jwk, ec_key.public_jwk]}


@pytest.fixture
def apple_claims() -> Callable[..., dict[str, Any]]:
    """
    Build Apple identity token claims.

    Example:
        >>> claims = apple_claims(nonce="n1", email_verified="true")
    """

    def _build(**overrides: Any) -> dict[str, Any]:
        now = int(time.time())
        claims = {
            "iss": APPLE_ISSUER,
            "aud": APPLE_CLIENT_ID,
            "sub": "001234.apple-subject",
            "iat": now,
            "exp": now + 600,
            "nonce": "nonce-1",
            "email": "apple.user@example.com",
            "email_verified": "true",
            "is_private_email": "false",
        }
        claims.update(overrides)
        return {k: v for k, v in claims.items() if v is not None}

    return _build


@dataclass
class FakeProviders:
    """
    Scripted Google and Apple endpoints served through ``httpx.MockTransport``.

    Each attribute holds the (status, json body) returned by one endpoint;
    ``requests`` records every outbound call in order.
    """

    jwks: tuple[int, Any]
    google_token: tuple[int, Any] = (
        200,
        {"access_token": "google-access-token", "token_type": "Bearer", "expires_in": 3599},
    )
    google_userinfo: tuple[int, Any] = (
        200,
        {
            "sub": "google-subject-1",
            "email": "Jane.Doe@Example.com",
            "email_verified": True,
            "given_name": "Jane",
            "family_name": "Doe",
            "picture": "https://example.com/jane.png",
        },
    )
    requests: list[httpx.Request] = field(default_factory=list)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.startswith(APPLE_JWKS_URL):
            status, body = self.jwks
        elif url.startswith("https://oauth2.googleapis.com/token"):
            status, body = self.google_token
        elif url.startswith("https://www.googleapis.com/oauth2/v3/userinfo"):
            status, body = self.google_userinfo
        else:
            return httpx.Response(404, json={"error": "not_found"})
        return httpx.Response(status, json=body)

    def calls_to(self, prefix: str) -> int:
        return sum(1 for r in self.requests if str(r.url).startswith(prefix))


@pytest.fixture
def providers(jwks_document) -> FakeProviders:
    return FakeProviders(jwks=(200, jwks_document))


@pytest.fixture
def mock_http_client(providers) -> httpx.AsyncClient:
    """Async client whose every request is answered by ``providers``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(providers.handle))


@pytest.fixture
def user_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def app_settings() -> Settings:
    """Settings for tests: fixed secrets, insecure cookies for the test client."""
    return Settings(
        jwt_secret_key="test-secret-key-that-is-long-enough",
        google_client_id=GOOGLE_CLIENT_ID,
        google_client_secret="google-client-secret",
        apple_client_id=APPLE_CLIENT_ID,
        apple_jwks_url=APPLE_JWKS_URL,
        oauth_cookie_secure=False,
        rate_limit_enabled=False,
        posthog_api_key=None,
    )


@pytest.fixture
def auth_services(app_settings, user_store, mock_http_client):
    """Auth services wired to the in-memory store and the fake providers."""
    services = build_auth_services(
        app_settings,
        user_store=user_store,
        blocklist=InMemoryTokenBlocklist(),
        http_client=mock_http_client,
    )
    set_auth_services(services)
    yield services
    set_auth_services(None)


@pytest.fixture
def client(auth_services) -> TestClient:
    """
    Provide FastAPI test client for API testing.

    The lifespan is not run; services come from the ``auth_services`` fixture.

    Returns:
        TestClient instance for making API requests

    Example:
        >>> def test_health(client):
        >>>     response = client.get("/health")
        >>>     assert response.status_code == 200
    """
    enabled = limiter.enabled
    limiter.enabled = False
    yield TestClient(app)
    limiter.enabled = enabled
