"""Application configuration using Pydantic Settings."""

import logging
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "default_secret_key_please_change"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # System Configuration
    api_v1_prefix: str = "/api/v1"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:4173"
    rate_limit_enabled: bool = True

    # Supabase Configuration (user store)
    supabase_url: str = "https://test.supabase.co"
    supabase_service_role_key: str = "test-service-role-key"
    users_table: str = "users"

    # Session token configuration
    jwt_secret_key: str = DEFAULT_JWT_SECRET
    jwt_issuer: str = "identity_api"
    jwt_access_token_expiry_minutes: int = 60
    jwt_refresh_token_expiry_days: int = 7

    # Google OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/api/v1/auth/google/callback"

    # Sign in with Apple
    apple_client_id: str = ""
    apple_redirect_uri: str = "http://localhost:8000/api/v1/auth/apple/callback"
    apple_jwks_url: str = "https://appleid.apple.com/auth/keys"

    # Identity token verification
    jwks_cache_ttl_seconds: int = 86400  # 24 hours
    jwks_min_refresh_interval_seconds: int = 60
    id_token_leeway_seconds: int = 60  # Clock skew tolerance
    oauth_http_timeout_seconds: float = 10.0

    # OAuth state/nonce cookies
    oauth_cookie_domain: str | None = None
    oauth_cookie_secure: bool = True
    oauth_cookie_http_only: bool = True
    oauth_cookie_same_site: Literal["lax", "strict", "none"] = "lax"
    oauth_state_cookie_name: str = "oauth_state"
    oauth_nonce_cookie_name: str = "oauth_nonce"
    oauth_cookie_max_age_minutes: int = 10

    # PostHog Configuration
    posthog_api_key: str | None = None
    posthog_host: str = "https://app.posthog.com"

    @field_validator("oauth_cookie_same_site", mode="before")
    @classmethod
    def lower_same_site(cls, value):
        return value.lower() if isinstance(value, str) else value

    def validate_for_startup(self) -> None:
        """
        Check settings that must be correct before serving traffic.

        Raises:
            ValueError: If the JWT secret is unset or still the insecure default
                outside debug mode
        """
        if not self.debug and (
            not self.jwt_secret_key.strip() or self.jwt_secret_key == DEFAULT_JWT_SECRET
        ):
            raise ValueError(
                "JWT_SECRET_KEY is not set or is using the default insecure value. "
                "Please set a strong secret."
            )

        if not self.google_client_id or not self.google_client_secret:
            logger.warning(
                "Google OAuth credentials (GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET) are not "
                "fully set. Google Sign-In will not work."
            )
        if not self.apple_client_id:
            logger.warning("APPLE_CLIENT_ID is not set. Sign in with Apple will not work.")


settings = Settings()
