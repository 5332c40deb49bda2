# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Server-side storage for pending authorization requests.

A request is stored when the login redirect is issued and removed by the
first callback that presents its state. Removal is a single atomic
operation, so two callbacks racing with the same state cannot both get it.
"""

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..common.utils import get_current_time
from ..errors import RequestStoreError
from .types import AuthorizationRequest

logger = logging.getLogger(__name__)


def _state_key(state: str) -> str:
    # Store a digest, not the state value itself.
    return hashlib.sha256(state.encode("utf-8")).hexdigest()


class RequestStore(ABC):
    """Abstract pending-request store."""

    @abstractmethod
    async def save(self, request: AuthorizationRequest) -> None:
        """Remember a request until its callback arrives or it expires."""
        pass

    @abstractmethod
    async def pop(self, state: str) -> Optional[AuthorizationRequest]:
        """Atomically remove and return the live request for ``state``."""
        pass

    async def close(self) -> None:
        """Release resources."""
        pass


class MemoryRequestStore(RequestStore):
    """
    In-memory request store for single-instance deployments and tests.
    """

    def __init__(self, max_entries: int = 10000):
        self._store: Dict[str, AuthorizationRequest] = {}
        self._lock = asyncio.Lock()
        self.max_entries = max_entries

    async def save(self, request: AuthorizationRequest) -> None:
        async with self._lock:
            if len(self._store) >= self.max_entries:
                self._cleanup_locked()
            if len(self._store) >= self.max_entries:
                raise RequestStoreError("Too many pending authorization requests")
            self._store[_state_key(request.state)] = request

    async def pop(self, state: str) -> Optional[AuthorizationRequest]:
        if not state:
            return None
        async with self._lock:
            request = self._store.pop(_state_key(state), None)
        if request is None or request.is_expired():
            return None
        return request

    async def cleanup(self) -> int:
        """Remove expired requests."""
        async with self._lock:
            return self._cleanup_locked()

    def _cleanup_locked(self) -> int:
        now = get_current_time()
        expired = [key for key, req in self._store.items() if req.is_expired(now)]
        for key in expired:
            del self._store[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired authorization requests")
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)


class RedisRequestStore(RequestStore):
    """
    Redis-backed request store for deployments with several instances.

    Entries expire with the request (``PX``) and are removed with ``GETDEL``.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "authpipe:authreq:"):
        self._redis = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> 'RedisRequestStore':
        """Create a store from a ``redis://`` URL."""
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _get_key(self, state: str) -> str:
        return f"{self.key_prefix}{_state_key(state)}"

    async def save(self, request: AuthorizationRequest) -> None:
        ttl_ms = int((request.expires_at - get_current_time()).total_seconds() * 1000)
        if ttl_ms <= 0:
            logger.warning("Refusing to store an already expired authorization request")
            return
        try:
            stored = await self._redis.set(
                self._get_key(request.state), json.dumps(request.to_dict()), px=ttl_ms, nx=True
            )
        except RedisError as e:
            raise RequestStoreError(f"Could not store authorization request: {type(e).__name__}")
        if not stored:
            raise RequestStoreError("An authorization request with this state already exists")

    async def pop(self, state: str) -> Optional[AuthorizationRequest]:
        if not state:
            return None
        try:
            raw = await self._redis.getdel(self._get_key(state))
        except RedisError as e:
            raise RequestStoreError(f"Could not read authorization request: {type(e).__name__}")
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        request = AuthorizationRequest.from_dict(json.loads(raw))
        if request.is_expired():
            return None
        return request

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Closed Redis request store")
