"""JSON Web Key Set retrieval and caching.

Key sets are cached per URI. A fresh set is reused for the TTL; when the
identity provider cannot be reached, a stale set is still served up to a
maximum age, after which key lookups fail with ``KeyFetchError``.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import jwt as pyjwt
from jwt.exceptions import PyJWKError, PyJWKSetError

from backchannel_logout.core.retry import CircuitBreakerOpen, ProviderHTTPClient, RetryPolicy
from backchannel_logout.services.errors import KeyFetchError

logger = logging.getLogger(__name__)

JWKS_SERVICE_NAME = "jwks"
JWKS_USER_AGENT = "oidc-backchannel-logout/0.1 (JWKS Client)"


@dataclass
class _CachedKeySet:
    jwk_set: pyjwt.PyJWKSet
    fetched_at: float


def parse_jwks(jwks: dict[str, Any]) -> pyjwt.PyJWKSet:
    """Parse a JWKS document, raising KeyFetchError if it holds no usable key."""
    if not isinstance(jwks, dict) or "keys" not in jwks:
        raise KeyFetchError("JWKS document has no 'keys' member")
    try:
        return pyjwt.PyJWKSet.from_dict(jwks)
    except (PyJWKSetError, PyJWKError) as e:
        raise KeyFetchError(f"JWKS document is unusable: {e}") from e


def find_key(jwk_set: pyjwt.PyJWKSet, kid: str | None) -> pyjwt.PyJWK | None:
    """Select the signing key for ``kid``.

    A token without ``kid`` is only accepted when the set holds exactly one key.
    """
    if kid is None:
        return jwk_set.keys[0] if len(jwk_set.keys) == 1 else None
    for key in jwk_set.keys:
        if key.key_id == kid:
            return key
    return None


class JwksCache:
    """Per-URI cache of identity-provider signing keys."""

    def __init__(
        self,
        http_client: ProviderHTTPClient | None = None,
        ttl_seconds: float = 300,
        max_stale_seconds: float = 900,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._http_client = http_client or ProviderHTTPClient(
            JWKS_SERVICE_NAME,
            timeout=timeout,
            policy=RetryPolicy(max_retries=2, base_delay=0.5, max_delay=2.0),
            headers={"User-Agent": JWKS_USER_AGENT, "Accept": "application/json"},
        )
        self._ttl = ttl_seconds
        self._max_stale = max_stale_seconds
        self._clock = clock
        self._cache: dict[str, _CachedKeySet] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def close(self) -> None:
        await self._http_client.close()

    def invalidate(self, uri: str) -> None:
        self._cache.pop(uri, None)

    async def get_key(self, uri: str, kid: str | None) -> pyjwt.PyJWK | None:
        """Return the key for ``kid`` from ``uri``, or None if it is not published.

        An unknown ``kid`` forces one refresh, to pick up rotated keys.

        Raises:
            KeyFetchError: If no key set can be obtained.
        """
        jwk_set = await self.get_key_set(uri)
        key = find_key(jwk_set, kid)
        if key is not None:
            return key

        logger.info("Signing key %s not in cached JWKS for %s, refreshing", kid, uri)
        jwk_set = await self.get_key_set(uri, force_refresh=True)
        return find_key(jwk_set, kid)

    async def get_key_set(self, uri: str, force_refresh: bool = False) -> pyjwt.PyJWKSet:
        """Return the key set published at ``uri``.

        Raises:
            KeyFetchError: If the set cannot be fetched and no stale copy is usable.
        """
        cached = self._cache.get(uri)
        if not force_refresh and cached and self._age(cached) < self._ttl:
            return cached.jwk_set

        lock = self._locks.setdefault(uri, asyncio.Lock())
        async with lock:
            # Another request may have refreshed while we waited
            cached = self._cache.get(uri)
            if not force_refresh and cached and self._age(cached) < self._ttl:
                return cached.jwk_set

            try:
                jwk_set = await self._fetch(uri)
            except KeyFetchError as e:
                if cached and self._age(cached) < self._max_stale:
                    logger.warning(f"JWKS fetch failed for {uri}, serving stale keys: {e}")
                    return cached.jwk_set
                logger.error(f"JWKS unavailable for {uri}: {e}")
                raise

            self._cache[uri] = _CachedKeySet(jwk_set=jwk_set, fetched_at=self._clock())
            return jwk_set

    def _age(self, cached: _CachedKeySet) -> float:
        return self._clock() - cached.fetched_at

    async def _fetch(self, uri: str) -> pyjwt.PyJWKSet:
        try:
            response = await self._http_client.get(uri)
            document = response.json()
        except CircuitBreakerOpen as e:
            raise KeyFetchError(str(e)) from e
        except httpx.HTTPError as e:
            raise KeyFetchError(f"JWKS request failed: {e}") from e
        except ValueError as e:
            raise KeyFetchError(f"JWKS response is not JSON: {e}") from e
        return parse_jwks(document)
