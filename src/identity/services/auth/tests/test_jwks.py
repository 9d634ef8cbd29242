"""Tests for JWKS cache module."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from src.identity.services.auth.exceptions import KeySetUnavailableError
from src.identity.services.auth.jwks import JWKSCache

JWKS_URL = "https://example.com/.well-known/jwks.json"


def _cache_for(handler, **kwargs) -> JWKSCache:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JWKSCache(JWKS_URL, http_client=client, **kwargs)


def _serving(document, status: int = 200):
    calls = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        # Yield so concurrent callers pile up on the in-flight fetch.
        await asyncio.sleep(0.01)
        return httpx.Response(status, json=document)

    return handler, calls


@pytest.mark.asyncio
class TestJWKSCache:
    """Tests for JWKSCache class."""

    async def test_initialization(self):
        """Test JWKS cache initialization."""
        cache = JWKSCache(JWKS_URL, cache_ttl=3600, min_refresh_interval=30)

        assert cache.jwks_url == JWKS_URL
        assert cache.cache_ttl == 3600
        assert cache.min_refresh_interval == 30
        assert cache._key_set is None
        assert cache.fetch_count == 0
        await cache.close()

    async def test_get_keys_fetches_and_caches(self, jwks_document):
        """Test first call fetches; later calls are served from memory."""
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler)

        first = await cache.get_keys()
        second = await cache.get_keys()

        assert first is second
        assert set(first.keys) == {"rsa-1", "ec-1"}
        assert first.get("rsa-1").algorithm == "RS256"
        assert first.get("ec-1").algorithm == "ES256"
        assert len(calls) == 1

    async def test_ttl_sets_expiry(self, jwks_document):
        handler, _ = _serving(jwks_document)
        cache = _cache_for(handler, cache_ttl=120)

        key_set = await cache.get_keys()

        assert key_set.expires_at - key_set.fetched_at == timedelta(seconds=120)
        assert not key_set.is_expired()

    async def test_concurrent_cold_cache_fetches_once(self, jwks_document):
        """Test concurrent callers on an empty cache share one upstream fetch."""
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler)

        results = await asyncio.gather(*(cache.get_keys() for _ in range(20)))

        assert len(calls) == 1
        assert cache.fetch_count == 1
        assert all(result is results[0] for result in results)

    async def test_concurrent_callers_share_failure(self):
        """Test all waiters receive the same error when the shared fetch fails."""
        handler, calls = _serving({"error": "down"}, status=500)
        cache = _cache_for(handler)

        results = await asyncio.gather(
            *(cache.get_keys() for _ in range(5)), return_exceptions=True
        )

        assert len(calls) == 1
        assert all(isinstance(r, KeySetUnavailableError) for r in results)

    async def test_expired_set_is_refetched(self, jwks_document):
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler)
        key_set = await cache.get_keys()

        key_set.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        refreshed = await cache.get_keys()

        assert refreshed is not key_set
        assert len(calls) == 2

    async def test_forced_refresh_respects_min_interval(self, jwks_document):
        """Test force_refresh is ignored while the set is younger than the interval."""
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler, min_refresh_interval=60)

        await cache.get_keys()
        await cache.get_keys(force_refresh=True)

        assert len(calls) == 1

    async def test_forced_refresh_after_min_interval(self, jwks_document):
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler, min_refresh_interval=0)

        await cache.get_keys()
        await cache.get_keys(force_refresh=True)

        assert len(calls) == 2

    async def test_failed_forced_refresh_keeps_valid_set(self, jwks_document):
        """Test a failed refresh never replaces a still-valid cached set."""
        handler, _ = _serving(jwks_document)
        cache = _cache_for(handler, min_refresh_interval=0)
        original = await cache.get_keys()

        cache._http_client.get = AsyncMock(side_effect=httpx.ConnectError("Connection failed"))
        result = await cache.get_keys(force_refresh=True)

        assert result is original
        assert cache._key_set is original

    async def test_http_error_on_empty_cache_raises(self):
        """Test JWKS fetch failure with HTTP error."""
        cache = JWKSCache(JWKS_URL)
        cache._http_client.get = AsyncMock(side_effect=httpx.ConnectError("Connection failed"))

        with pytest.raises(KeySetUnavailableError):
            await cache.get_keys()
        assert cache._key_set is None
        await cache.close()

    async def test_non_200_raises(self):
        handler, _ = _serving({"keys": []}, status=503)
        cache = _cache_for(handler)

        with pytest.raises(KeySetUnavailableError, match="status 503"):
            await cache.get_keys()

    async def test_malformed_document_raises(self):
        handler, _ = _serving({"not_keys": []})
        cache = _cache_for(handler)

        with pytest.raises(KeySetUnavailableError, match="malformed"):
            await cache.get_keys()

    async def test_unusable_keys_are_skipped(self, rsa_key):
        """Test keys without kid, symmetric keys and broken keys are ignored."""
        document = {
            "keys": [
                {k: v for k, v in rsa_key.public_jwk.items() if k != "kid"},
                {"kid": "hmac", "kty": "oct", "k": "c2VjcmV0"},
                {"kid": "broken", "kty": "RSA", "alg": "RS256", "n": "!!", "e": "AQAB"},
                rsa_key.public_jwk,
            ]
        }
        handler, _ = _serving(document)
        cache = _cache_for(handler)

        key_set = await cache.get_keys()

        assert set(key_set.keys) == {"rsa-1"}

    async def test_no_usable_keys_raises(self):
        handler, _ = _serving({"keys": [{"kid": "hmac", "kty": "oct", "k": "c2VjcmV0"}]})
        cache = _cache_for(handler)

        with pytest.raises(KeySetUnavailableError, match="no usable keys"):
            await cache.get_keys()

    async def test_reset_forces_next_fetch(self, jwks_document):
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler)
        await cache.get_keys()

        cache.reset()
        await cache.get_keys()

        assert len(calls) == 2
        assert cache.fetch_count == 2

    async def test_set_source_url_switches_endpoint(self, jwks_document):
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler)
        await cache.get_keys()

        cache.set_source_url("https://other.example.com/keys")
        await cache.get_keys()

        assert cache.jwks_url == "https://other.example.com/keys"
        assert str(calls[-1].url) == "https://other.example.com/keys"

    async def test_fetch_in_flight_during_source_change_is_not_cached(self, rsa_key, ec_key):
        """Test keys from the old URL never land in the cache after a re-point."""
        entered = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == JWKS_URL:
                entered.set()
                await release.wait()
                return httpx.Response(200, json={"keys": [rsa_key.public_jwk]})
            return httpx.Response(200, json={"keys": [ec_key.public_jwk]})

        cache = _cache_for(handler)
        stale = asyncio.ensure_future(cache.get_keys())
        await entered.wait()

        cache.set_source_url("https://other.example.com/keys")
        release.set()
        await stale

        assert cache._key_set is None
        key_set = await cache.get_keys()
        assert set(key_set.keys) == {"ec-1"}

    async def test_reset_during_fetch_discards_result(self, jwks_document):
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler)

        in_flight = asyncio.ensure_future(cache.get_keys())
        await asyncio.sleep(0)
        cache.reset()
        await in_flight

        assert cache._key_set is None
        await cache.get_keys()
        assert len(calls) == 2

    async def test_cancelled_waiter_does_not_cancel_fetch(self, jwks_document):
        """Test one caller's cancellation leaves the shared fetch running."""
        handler, calls = _serving(jwks_document)
        cache = _cache_for(handler)

        first = asyncio.ensure_future(cache.get_keys())
        second = asyncio.ensure_future(cache.get_keys())
        await asyncio.sleep(0)
        first.cancel()

        key_set = await second

        assert first.cancelled()
        assert "rsa-1" in key_set.keys
        assert len(calls) == 1
