"""Revocation list for refresh tokens, keyed by token identifier (``jti``)."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)


class TokenBlocklist(Protocol):
    """Revocation store consulted before honoring a refresh token."""

    async def is_revoked(self, jti: str) -> bool: ...

    async def revoke(self, jti: str, until: datetime) -> None: ...


class InMemoryTokenBlocklist:
    """
    Process-local blocklist.

    Entries live exactly as long as the token would have been valid; expired
    entries are pruned lazily on write.
    """

    def __init__(self) -> None:
        self._entries: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def revoke(self, jti: str, until: datetime) -> None:
        now = datetime.now(timezone.utc)
        if until <= now:
            # Already expired; signature validation rejects it anyway.
            return

        async with self._lock:
            self._prune(now)
            self._entries[jti] = until
        logger.info("Token revoked", extra={"jti": jti, "until": until.isoformat()})

    async def is_revoked(self, jti: str) -> bool:
        until = self._entries.get(jti)
        return until is not None and until > datetime.now(timezone.utc)

    def _prune(self, now: datetime) -> None:
        expired = [jti for jti, until in self._entries.items() if until <= now]
        for jti in expired:
            del self._entries[jti]
