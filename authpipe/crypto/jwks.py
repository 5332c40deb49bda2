# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Provider key-set refresh from a JWKS endpoint.

Fetched keys replace the store contents in one atomic install. When a fetch
fails the previous key set stays in place.
"""

import asyncio
import logging
import time
from typing import Any, List, Mapping, Optional

import aiohttp

from ..errors import (
    AuthPipelineError, ConfigurationError, TransientNetworkError,
    UnsupportedAlgorithmError,
)
from ..resilience.retry import Retry, RetryConfig
from .keys import KeyStore, SigningKey

logger = logging.getLogger(__name__)


def parse_jwks(document: Mapping[str, Any]) -> List[SigningKey]:
    """Convert a JWKS document into verification keys, skipping unusable entries."""
    entries = document.get("keys") if isinstance(document, Mapping) else None
    if not isinstance(entries, list):
        raise ConfigurationError("JWKS document has no 'keys' array")

    keys = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        if entry.get("use", "sig") != "sig":
            continue
        try:
            keys.append(SigningKey.from_jwk(entry))
        except (ConfigurationError, UnsupportedAlgorithmError) as e:
            logger.warning(f"Skipping JWK {entry.get('kid')}: {e.message}")
    return keys


class JWKSClient:
    """Keeps a ``KeyStore`` in sync with a provider's published keys."""

    def __init__(self, jwks_uri: str, key_store: KeyStore,
                 cache_ttl: int = 3600, http_timeout: float = 10.0,
                 retry: Optional[RetryConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.jwks_uri = jwks_uri
        self.key_store = key_store
        self.cache_ttl = cache_ttl
        self.http_timeout = http_timeout
        self.retry_config = retry or RetryConfig()
        self._session = session
        self._lock = asyncio.Lock()
        self._fetched_at: float = 0.0

    @property
    def is_stale(self) -> bool:
        return time.monotonic() - self._fetched_at >= self.cache_ttl or not self._fetched_at

    async def _fetch(self) -> Mapping[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.http_timeout)
        try:
            if self._session is not None:
                async with self._session.get(self.jwks_uri, timeout=timeout) as response:
                    return await self._read(response)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.jwks_uri) as response:
                    return await self._read(response)
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"JWKS fetch failed: {type(e).__name__}")

    @staticmethod
    async def _read(response: aiohttp.ClientResponse) -> Mapping[str, Any]:
        if response.status >= 500:
            raise TransientNetworkError(f"JWKS endpoint returned {response.status}")
        if response.status != 200:
            raise ConfigurationError(f"JWKS endpoint returned {response.status}")
        try:
            return await response.json(content_type=None)
        except (ValueError, RecursionError):
            raise ConfigurationError("JWKS endpoint returned invalid JSON")

    async def refresh(self, force: bool = True) -> int:
        """
        Fetch the key set and install it. Returns the number of keys installed.

        With ``force=False`` a key set refreshed by a concurrent caller while
        this one waited for the lock is kept as is.
        """
        async with self._lock:
            if not force and not self.is_stale:
                return len(self.key_store)
            try:
                document = await Retry(self.retry_config).execute(self._fetch)
                keys = parse_jwks(document)
            except AuthPipelineError as e:
                logger.error(f"JWKS refresh failed ({e.diagnostic_code}); keeping {len(self.key_store)} keys")
                raise
            self.key_store.install(keys)
            self._fetched_at = time.monotonic()
            logger.info(f"JWKS refreshed successfully: {len(keys)} keys from {self.jwks_uri}")
            return len(keys)

    async def ensure_fresh(self) -> None:
        """Refresh only when the cached key set is older than ``cache_ttl``."""
        if self.is_stale:
            await self.refresh(force=False)
