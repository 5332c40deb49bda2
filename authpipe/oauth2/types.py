# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
OAuth2 / OpenID Connect types for the authorization-code flow.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

from ..common.utils import from_timestamp, resolve_now, to_timestamp
from ..errors import ConfigurationError
from ..resilience.retry import RetryConfig

OPENID_SCOPE = "openid"
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _check_endpoint(name: str, url: str) -> None:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"{name} must be an absolute URL")
    if parsed.scheme != "https" and not (parsed.scheme == "http" and parsed.hostname in _LOCAL_HOSTS):
        raise ConfigurationError(f"{name} must use https")
    if parsed.fragment:
        raise ConfigurationError(f"{name} must not contain a fragment")


@dataclass
class ProviderConfig:
    """Identity provider and client registration settings."""
    issuer: str
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: Optional[str] = None
    scopes: List[str] = field(default_factory=lambda: [OPENID_SCOPE])
    use_pkce: bool = True
    request_ttl: timedelta = field(default_factory=lambda: timedelta(minutes=10))
    http_timeout: float = 10.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self):
        scopes = [s for s in self.scopes if s]
        if OPENID_SCOPE not in scopes:
            scopes.insert(0, OPENID_SCOPE)
        self.scopes = scopes

    def validate(self) -> bool:
        """Validate the configuration."""
        for name in ("issuer", "client_id", "client_secret", "redirect_uri",
                     "authorization_endpoint", "token_endpoint"):
            if not getattr(self, name):
                raise ConfigurationError(f"{name} is required")

        _check_endpoint("authorization_endpoint", self.authorization_endpoint)
        _check_endpoint("token_endpoint", self.token_endpoint)
        _check_endpoint("redirect_uri", self.redirect_uri)
        if self.jwks_uri:
            _check_endpoint("jwks_uri", self.jwks_uri)

        if self.request_ttl <= timedelta(0):
            raise ConfigurationError("request_ttl must be positive")
        if self.http_timeout <= 0:
            raise ConfigurationError("http_timeout must be positive")
        return True


@dataclass
class AuthorizationRequest:
    """
    Pending login between redirect and callback.

    ``state``, ``nonce`` and ``code_verifier`` are secrets and are kept out of
    ``repr``. The request can be consumed exactly once.
    """
    state: str = field(repr=False)
    nonce: str = field(repr=False)
    redirect_uri: str
    created_at: datetime
    expires_at: datetime
    scopes: Tuple[str, ...] = (OPENID_SCOPE,)
    code_verifier: Optional[str] = field(default=None, repr=False)
    _consumed: bool = field(default=False, init=False, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False,
                                  repr=False, compare=False)

    def consume(self) -> bool:
        """Atomically mark the request used. Returns False if it already was."""
        with self._lock:
            if self._consumed:
                return False
            self._consumed = True
            return True

    @property
    def consumed(self) -> bool:
        return self._consumed

    def is_expired(self, now: Optional[Union[datetime, int, float]] = None) -> bool:
        return resolve_now(now) >= self.expires_at.timestamp()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for a server-side request store."""
        return {
            'state': self.state,
            'nonce': self.nonce,
            'redirect_uri': self.redirect_uri,
            'scopes': list(self.scopes),
            'code_verifier': self.code_verifier,
            'created_at': to_timestamp(self.created_at),
            'expires_at': to_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuthorizationRequest':
        """Create from dictionary."""
        return cls(
            state=data['state'],
            nonce=data['nonce'],
            redirect_uri=data['redirect_uri'],
            scopes=tuple(data.get('scopes') or (OPENID_SCOPE,)),
            code_verifier=data.get('code_verifier'),
            created_at=from_timestamp(data['created_at']),
            expires_at=from_timestamp(data['expires_at']),
        )


@dataclass(frozen=True)
class ExchangeResult:
    """
    Outcome of a successful code exchange.

    ``claims`` are the verified ID-token claims. The raw ID token itself is
    not kept. Provider tokens are opaque and excluded from ``repr``.
    """
    claims: Dict[str, Any]
    access_token: str = field(repr=False)
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = field(default=None, repr=False)
    token_type: str = "Bearer"
    scope: Optional[str] = None

    @property
    def subject(self) -> Optional[str]:
        return self.claims.get("sub")
