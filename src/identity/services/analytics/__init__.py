"""Product analytics."""

from src.identity.services.analytics.posthog import PostHogService

__all__ = ["PostHogService"]
