# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Session issuer for the service's own signed session artifacts.

Sessions are compact tokens signed with the current key of a dedicated
``KeyStore``. They carry the verified subject, a random session id and only
the claims the caller explicitly opts into.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

from ..common.utils import from_timestamp, resolve_now
from ..crypto.keys import KeyStore, SigningKey
from ..crypto.signature import SignatureEngine
from ..errors import ConfigurationError
from ..token.codec import TokenCodec
from ..token.verifier import DEFAULT_LEEWAY, TokenVerifier, VerificationPolicy

logger = logging.getLogger(__name__)

SESSION_TOKEN_TYPE = "JWT"
SESSION_ID_BYTES = 16

# Registered claims the issuer owns; callers cannot set them.
RESERVED_CLAIMS = frozenset({"iss", "sub", "aud", "exp", "nbf", "iat", "jti"})


@dataclass
class SessionConfig:
    """Session issuer configuration."""
    issuer: str
    audience: str
    ttl: timedelta = field(default_factory=lambda: timedelta(hours=8))
    leeway: timedelta = field(default_factory=lambda: DEFAULT_LEEWAY)
    embedded_claims: List[str] = field(default_factory=list)

    def validate(self) -> bool:
        """Validate the configuration."""
        if not self.issuer:
            raise ConfigurationError("Session issuer is required")
        if not self.audience:
            raise ConfigurationError("Session audience is required")
        if self.ttl <= timedelta(0):
            raise ConfigurationError("Session ttl must be positive")
        if self.leeway < timedelta(0):
            raise ConfigurationError("Session leeway cannot be negative")
        reserved = RESERVED_CLAIMS.intersection(self.embedded_claims)
        if reserved:
            raise ConfigurationError(f"Cannot embed reserved claims: {sorted(reserved)}")
        return True


@dataclass(frozen=True)
class Session:
    """A minted session. ``token`` is the opaque value handed to the client."""
    token: str = field(repr=False)
    subject: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    claims: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[Union[datetime, int, float]] = None) -> bool:
        return resolve_now(now) >= self.expires_at.timestamp()

    def to_dict(self) -> Dict[str, Any]:
        """Public view without the token itself."""
        return {
            'subject': self.subject,
            'session_id': self.session_id,
            'issued_at': self.issued_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'claims': dict(self.claims),
        }


class SessionIssuer:
    """Mints and verifies session tokens against one key store."""

    def __init__(self, config: SessionConfig, key_store: KeyStore,
                 engine: Optional[SignatureEngine] = None,
                 codec: Optional[TokenCodec] = None):
        config.validate()
        self.config = config
        self.key_store = key_store
        self.engine = engine or SignatureEngine()
        self.codec = codec or TokenCodec()
        self._verifier = TokenVerifier(
            key_store,
            VerificationPolicy(issuer=config.issuer, audience=config.audience,
                               leeway=config.leeway),
            engine=self.engine,
            codec=self.codec,
        )

    def issue(self, subject: str, claims: Optional[Mapping[str, Any]] = None,
              ttl: Optional[timedelta] = None,
              now: Optional[Union[datetime, int, float]] = None) -> Session:
        """
        Mint a session for ``subject``.

        Args:
            subject: Verified subject identifier.
            claims: Extra claims to embed. Registered claims are rejected.
            ttl: Lifetime; defaults to the configured session ttl.
            now: Issue time; defaults to the current time.

        Returns:
            The signed session.
        """
        if not isinstance(subject, str) or not subject:
            raise ConfigurationError("Session subject is required")
        extra = dict(claims or {})
        reserved = RESERVED_CLAIMS.intersection(extra)
        if reserved:
            raise ConfigurationError(f"Cannot override reserved claims: {sorted(reserved)}")
        lifetime = ttl if ttl is not None else self.config.ttl
        if lifetime <= timedelta(0):
            raise ConfigurationError("Session ttl must be positive")

        issued = int(resolve_now(now))
        expires = issued + int(lifetime.total_seconds())
        key = self.key_store.current_key(issued)
        session_id = secrets.token_urlsafe(SESSION_ID_BYTES)

        header = {'alg': key.algorithm, 'typ': SESSION_TOKEN_TYPE}
        if key.kid is not None:
            header['kid'] = key.kid
        payload = {
            'iss': self.config.issuer,
            'sub': subject,
            'aud': self.config.audience,
            'iat': issued,
            'exp': expires,
            'jti': session_id,
        }
        payload.update(extra)

        signature = self.engine.sign(self.codec.encode_signing_input(header, payload), key)
        token = self.codec.encode(header, payload, signature)
        logger.info(f"Issued session {session_id} with key {key.kid}")

        return Session(
            token=token,
            subject=subject,
            session_id=session_id,
            issued_at=from_timestamp(issued),
            expires_at=from_timestamp(expires),
            claims=extra,
        )

    def verify(self, wire: str,
               now: Optional[Union[datetime, int, float]] = None) -> Dict[str, Any]:
        """Verify a session token and return its claims."""
        return self._verifier.verify(wire, now=now)

    def rotate(self, new_key: SigningKey, grace: timedelta,
               now: Optional[Union[datetime, int, float]] = None) -> Optional[SigningKey]:
        """Sign with ``new_key`` from now on; the old key verifies for ``grace``."""
        return self.key_store.rotate(new_key, grace, now=now)
