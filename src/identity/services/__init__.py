"""Shared services: auth, persistence, analytics and rate limiting."""
