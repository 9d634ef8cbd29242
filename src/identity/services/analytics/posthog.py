"""PostHog analytics service for sign-in event tracking."""

import logging

import posthog

from src.identity.config import settings

logger = logging.getLogger(__name__)


class PostHogService:
    """Service for tracking authentication events via PostHog."""

    def __init__(self) -> None:
        """Initialize PostHog service."""
        if settings.posthog_api_key:
            posthog.api_key = settings.posthog_api_key
            posthog.host = settings.posthog_host

    def capture(self, distinct_id: str, event: str, properties: dict | None = None) -> None:
        """
        Track an event. No-op when no API key is configured.

        Args:
            distinct_id: User ID, or "anonymous" before a user is resolved
            event: Event name (e.g., "user_registered", "oauth_login_failed")
            properties: Optional event properties

        Example:
            >>> service = PostHogService()
            >>> service.capture("user-123", "oauth_login_succeeded", {"provider": "google"})
        """
        if not settings.posthog_api_key:
            return

        try:
            posthog.capture(distinct_id=distinct_id, event=event, properties=properties or {})
        except Exception as e:
            # Analytics must never fail a sign-in.
            logger.warning(f"PostHog capture failed for {event}: {e}")
