"""Rate limiting service for auth endpoints."""

import logging

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.identity.config import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Key rate limits by client IP.

    Every auth endpoint is reached before the caller holds a session, so
    there is no user identity to key on.
    """
    return f"ip:{get_remote_address(request)}"


# Initialize rate limiter with in-memory storage
limiter = Limiter(
    key_func=get_client_ip,
    default_limits=[],  # No global limits, applied per-endpoint
    storage_uri="memory://",  # In-memory storage for single-instance deployment
    enabled=settings.rate_limit_enabled,
)


class RateLimitTiers:
    """Rate limit tiers for different endpoint categories (per IP)."""

    # OAuth redirects and callbacks
    OAUTH = ["30 per minute", "300 per hour"]

    # Password login and registration (credential guessing)
    CREDENTIALS = ["10 per minute", "50 per hour"]

    # Refresh and logout
    SESSION = ["60 per minute", "600 per hour"]


# Note: These decorators require the endpoint to have a 'request: Request' parameter
# as per slowapi documentation requirements
oauth_rate_limit = limiter.limit(";".join(RateLimitTiers.OAUTH))
credentials_rate_limit = limiter.limit(";".join(RateLimitTiers.CREDENTIALS))
session_rate_limit = limiter.limit(";".join(RateLimitTiers.SESSION))
