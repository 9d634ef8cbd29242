"""Construction and FastAPI dependency access for the auth services."""

import logging
from dataclasses import dataclass
from datetime import timedelta

import httpx
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.identity.config import Settings
from src.identity.features.auth.service import AccountService
from src.identity.services.analytics.posthog import PostHogService
from src.identity.services.auth.blocklist import InMemoryTokenBlocklist, TokenBlocklist
from src.identity.services.auth.exceptions import UnauthorizedError
from src.identity.services.auth.id_token import AppleIDTokenVerifier
from src.identity.services.auth.jwks import JWKSCache
from src.identity.services.auth.models import TokenClaims
from src.identity.services.auth.oauth import OAuthService
from src.identity.services.auth.reconciliation import IdentityReconciler
from src.identity.services.auth.tokens import TokenService
from src.identity.services.database.user_store import UserStore

security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class AuthServices:
    """The wired auth components shared by all requests."""

    settings: Settings
    jwks_cache: JWKSCache
    token_service: TokenService
    oauth_service: OAuthService
    account_service: AccountService

    async def close(self) -> None:
        await self.oauth_service.close()
        await self.jwks_cache.close()


def build_auth_services(
    settings: Settings,
    user_store: UserStore,
    blocklist: TokenBlocklist | None = None,
    http_client: httpx.AsyncClient | None = None,
    analytics: PostHogService | None = None,
) -> AuthServices:
    """
    Wire the auth components together.

    Args:
        settings: Application settings
        user_store: User persistence
        blocklist: Refresh-token revocation store (in-memory if None)
        http_client: Outbound client for provider endpoints; tests pass one
            backed by ``httpx.MockTransport``
        analytics: Event sink (PostHog if None)
    """
    analytics = analytics or PostHogService()
    jwks_cache = JWKSCache(
        jwks_url=settings.apple_jwks_url,
        cache_ttl=settings.jwks_cache_ttl_seconds,
        min_refresh_interval=settings.jwks_min_refresh_interval_seconds,
        timeout=settings.oauth_http_timeout_seconds,
        http_client=http_client,
    )
    token_service = TokenService(
        secret_key=settings.jwt_secret_key,
        blocklist=blocklist or InMemoryTokenBlocklist(),
        issuer=settings.jwt_issuer,
        access_ttl=timedelta(minutes=settings.jwt_access_token_expiry_minutes),
        refresh_ttl=timedelta(days=settings.jwt_refresh_token_expiry_days),
    )
    oauth_service = OAuthService(
        settings=settings,
        reconciler=IdentityReconciler(user_store),
        token_service=token_service,
        apple_verifier=AppleIDTokenVerifier(jwks_cache, leeway=settings.id_token_leeway_seconds),
        http_client=http_client,
        analytics=analytics,
    )
    account_service = AccountService(user_store, token_service, analytics=analytics)
    return AuthServices(
        settings=settings,
        jwks_cache=jwks_cache,
        token_service=token_service,
        oauth_service=oauth_service,
        account_service=account_service,
    )


# Global auth services instance (initialized in main.py startup)
_auth_services: AuthServices | None = None


def set_auth_services(services: AuthServices | None) -> None:
    """
    Set the global auth services instance.

    Called during application startup; tests call it with services wired to
    fakes.
    """
    global _auth_services
    _auth_services = services


def get_auth_services() -> AuthServices:
    """
    Get the global auth services instance.

    Raises:
        RuntimeError: If auth services are not initialized
    """
    if _auth_services is None:
        raise RuntimeError(
            "Auth services not initialized. "
            "Ensure application startup calls set_auth_services()."
        )
    return _auth_services


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    services: AuthServices = Depends(get_auth_services),
) -> TokenClaims:
    """
    Extract and validate the caller's access token.

    Args:
        credentials: Bearer token from Authorization header

    Returns:
        Verified access token claims

    Raises:
        UnauthorizedError: 401 if the header is missing or not a Bearer token
        TokenInvalidError: 401 if the token is expired, tampered with or is a
            refresh token

    Example:
        @router.get("/me")
        async def me(current_user: TokenClaims = Depends(get_current_user)):
            return {"user_id": current_user.user_id}
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        logger.info("Auth failed: missing bearer token")
        raise UnauthorizedError(message="Missing bearer token.")
    return services.token_service.validate_token(credentials.credentials)
