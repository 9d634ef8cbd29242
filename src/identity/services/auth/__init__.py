"""Authentication: identity verification, account linking and session tokens."""

from src.identity.services.auth.blocklist import InMemoryTokenBlocklist, TokenBlocklist
from src.identity.services.auth.dependencies import (
    AuthServices,
    build_auth_services,
    get_auth_services,
    get_current_user,
    set_auth_services,
)
from src.identity.services.auth.id_token import AppleIDTokenVerifier, IdentityTokenVerifier
from src.identity.services.auth.jwks import JWKSCache
from src.identity.services.auth.oauth import OAuthService
from src.identity.services.auth.reconciliation import IdentityReconciler
from src.identity.services.auth.tokens import TokenService

__all__ = [
    "AppleIDTokenVerifier",
    "AuthServices",
    "build_auth_services",
    "get_auth_services",
    "get_current_user",
    "IdentityReconciler",
    "IdentityTokenVerifier",
    "InMemoryTokenBlocklist",
    "JWKSCache",
    "OAuthService",
    "set_auth_services",
    "TokenBlocklist",
    "TokenService",
]
