"""JWKS (JSON Web Key Set) fetching and caching for identity token verification."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
from jose import jwk
from jose.backends import ECKey, RSAKey
from jose.exceptions import JWKError

from src.identity.services.auth.exceptions import KeySetUnavailableError

logger = logging.getLogger(__name__)

# Asymmetric algorithms only; symmetric keys in a public JWKS are never trusted.
ALLOWED_ALGORITHMS = frozenset({"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"})

_EC_CURVE_ALGORITHMS = {"P-256": "ES256", "P-384": "ES384", "P-521": "ES512"}


@dataclass
class SigningKey:
    """A public key from the key set with the algorithm it must be used with."""

    kid: str
    key: RSAKey | ECKey
    algorithm: str


@dataclass
class SigningKeySet:
    """Immutable-by-convention snapshot of a fetched JWKS."""

    keys: dict[str, SigningKey]
    fetched_at: datetime
    expires_at: datetime

    def get(self, kid: str) -> SigningKey | None:
        return self.keys.get(kid)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


@dataclass
class _RefreshState:
    task: asyncio.Task | None = None
    fetch_count: int = 0


class JWKSCache:
    """
    Fetches a provider's JWKS and caches it in memory with a TTL.

    Reads of a populated, unexpired key set never touch the network or wait on
    a lock. On a miss, exactly one fetch runs; concurrent callers await the
    same in-flight task and share its result or its error.

    A failed fetch never overwrites the cached set. When the cached set is
    still valid (a forced refresh for an unknown ``kid``) it is kept and
    returned; when the cache is empty or expired the failure is raised as
    ``KeySetUnavailableError``.

    Attributes:
        jwks_url: URL to fetch JWKS from
        cache_ttl: Cache time-to-live in seconds (default: 86400 = 24 hours)
        min_refresh_interval: Minimum seconds between forced refreshes
        _key_set: Cached key set, ``None`` until the first successful fetch
        _http_client: HTTP client for fetching JWKS

    Example:
        >>> cache = JWKSCache("https://appleid.apple.com/auth/keys")
        >>> key_set = await cache.get_keys()
        >>> signing_key = key_set.get("key-id-123")
    """

    def __init__(
        self,
        jwks_url: str,
        cache_ttl: int = 86400,
        min_refresh_interval: int = 60,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize JWKS cache.

        Args:
            jwks_url: URL to fetch JWKS from
            cache_ttl: Cache TTL in seconds (default: 24 hours)
            min_refresh_interval: Seconds a key set must age before a forced refresh
            timeout: Timeout in seconds for the JWKS request
            http_client: Optional client (tests pass one backed by a mock transport)
        """
        self.jwks_url = jwks_url
        self.cache_ttl = cache_ttl
        self.min_refresh_interval = min_refresh_interval
        self._key_set: SigningKeySet | None = None
        self._refresh = _RefreshState()
        self._generation = 0
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=timeout)
        )

    @property
    def fetch_count(self) -> int:
        """Number of upstream fetches attempted since creation."""
        return self._refresh.fetch_count

    async def get_keys(self, force_refresh: bool = False) -> SigningKeySet:
        """
        Return the current key set, fetching it when missing or expired.

        Args:
            force_refresh: Re-fetch a still-valid set (key rotation). Ignored if
                the set was fetched less than ``min_refresh_interval`` ago.

        Returns:
            The cached or freshly fetched key set

        Raises:
            KeySetUnavailableError: If the fetch failed and no valid set is cached
        """
        current = self._key_set
        if current is not None and not current.is_expired():
            if not force_refresh or not self._refresh_allowed(current):
                return current

        task = self._refresh.task
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(current, self._generation))
            task.add_done_callback(self._clear_refresh_task)
            self._refresh.task = task

        # Shield so one cancelled caller does not cancel the fetch others await.
        return await asyncio.shield(task)

    def reset(self) -> None:
        """Drop the cached key set; the next ``get_keys()`` fetches again."""
        self._key_set = None
        self._refresh = _RefreshState(fetch_count=self._refresh.fetch_count)
        self._generation += 1
        logger.info("JWKS cache reset", extra={"jwks_url": self.jwks_url})

    def set_source_url(self, jwks_url: str) -> None:
        """Point the cache at a different JWKS URL and drop cached keys."""
        self.jwks_url = jwks_url
        self.reset()

    async def close(self) -> None:
        """
        Close HTTP client and cleanup resources.

        Should be called during application shutdown.
        """
        await self._http_client.aclose()
        logger.info("JWKS cache closed")

    def _refresh_allowed(self, current: SigningKeySet) -> bool:
        age = (datetime.now(timezone.utc) - current.fetched_at).total_seconds()
        return age >= self.min_refresh_interval

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh.task is task:
            self._refresh.task = None
        if not task.cancelled():
            # Mark the exception retrieved; waiters already received it.
            task.exception()

    async def _fetch_and_store(
        self, previous: SigningKeySet | None, generation: int
    ) -> SigningKeySet:
        try:
            key_set = await self._fetch()
        except KeySetUnavailableError:
            if previous is not None and not previous.is_expired():
                logger.warning(
                    "JWKS refresh failed, keeping still-valid cached key set",
                    extra={"jwks_url": self.jwks_url, "expires_at": previous.expires_at.isoformat()},
                )
                return previous
            raise

        if generation != self._generation:
            # Reset or re-pointed mid-fetch; the result belongs to the old source.
            logger.info(
                "Discarding JWKS fetched before cache reset", extra={"jwks_url": self.jwks_url}
            )
            return key_set

        # Atomic update
        self._key_set = key_set
        return key_set

    async def _fetch(self) -> SigningKeySet:
        self._refresh.fetch_count += 1

        try:
            logger.info(f"Fetching JWKS from {self.jwks_url}")
            response = await self._http_client.get(self.jwks_url)
        except httpx.HTTPError as e:
            logger.error(
                f"Failed to fetch JWKS from {self.jwks_url}: {e}",
                exc_info=True,
                extra={"error_type": "jwks_fetch_failed"},
            )
            raise KeySetUnavailableError(f"Could not reach key server: {type(e).__name__}") from e

        if response.status_code != 200:
            logger.error(
                f"JWKS endpoint returned status {response.status_code}",
                extra={"error_type": "jwks_fetch_failed", "status": response.status_code},
            )
            raise KeySetUnavailableError(f"Key server returned status {response.status_code}")

        try:
            keys_list = response.json()["keys"]
            if not isinstance(keys_list, list):
                raise TypeError("'keys' is not a list")
        except (ValueError, KeyError, TypeError) as e:
            logger.error(
                f"Failed to parse JWKS: {e}",
                extra={"error_type": "jwks_parse_failed"},
            )
            raise KeySetUnavailableError("Key server returned a malformed key set") from e

        new_keys = self._parse_keys(keys_list)
        if not new_keys:
            logger.error(
                "JWKS response contains no usable keys",
                extra={"error_type": "jwks_parse_failed", "jwks_url": self.jwks_url},
            )
            raise KeySetUnavailableError("Key server returned no usable keys")

        fetched_at = datetime.now(timezone.utc)
        key_set = SigningKeySet(
            keys=new_keys,
            fetched_at=fetched_at,
            expires_at=fetched_at + timedelta(seconds=self.cache_ttl),
        )

        logger.info(
            "JWKS cache refreshed successfully",
            extra={
                "key_count": len(new_keys),
                "key_ids": list(new_keys.keys()),
                "ttl_seconds": self.cache_ttl,
            },
        )
        return key_set

    def _parse_keys(self, keys_list: list) -> dict[str, SigningKey]:
        new_keys: dict[str, SigningKey] = {}
        for key_data in keys_list:
            if not isinstance(key_data, dict):
                continue

            kid = key_data.get("kid")
            if not kid:
                logger.warning("JWKS key missing 'kid', skipping")
                continue

            algorithm = self._algorithm_for(key_data)
            if algorithm not in ALLOWED_ALGORITHMS:
                logger.warning(
                    f"Skipping JWKS key {kid} with unsupported algorithm",
                    extra={"kid": kid, "kty": key_data.get("kty"), "alg": algorithm},
                )
                continue

            try:
                key = jwk.construct(key_data, algorithm=algorithm)
            except (JWKError, ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid JWKS key {kid}: {e}", extra={"kid": kid})
                continue

            new_keys[kid] = SigningKey(kid=kid, key=key, algorithm=algorithm)
            logger.debug(
                f"Loaded key {kid} (algorithm: {algorithm})",
                extra={"kid": kid, "kty": key_data.get("kty"), "alg": algorithm},
            )
        return new_keys

    @staticmethod
    def _algorithm_for(key_data: dict) -> str | None:
        kty = key_data.get("kty")
        alg = key_data.get("alg")
        if kty == "RSA":
            return alg or "RS256"
        if kty == "EC":
            return alg or _EC_CURVE_ALGORITHMS.get(key_data.get("crv", ""), "ES256")
        # "oct" and anything unrecognised
        return None
