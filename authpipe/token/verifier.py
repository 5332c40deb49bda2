# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Token verification: signature first, then claims.

Verification is a pure decision over (token, key set, time). It does no I/O
and never retries. A token moves through decode -> key resolution ->
signature -> claims and ends either in a trusted claim set or a rejection
carrying one ``ErrorCode``.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from ..common.utils import constant_time_equals, get_current_time, resolve_now
from ..crypto.keys import KeyStore
from ..crypto.signature import SignatureEngine
from ..errors import (
    AuthPipelineError, BadSignature, ClaimMismatch, ConfigurationError,
    ErrorCode, ExpiredToken,
)
from .codec import TokenCodec

logger = logging.getLogger(__name__)

DEFAULT_LEEWAY = timedelta(seconds=60)


@dataclass
class VerificationPolicy:
    """What a token must assert to be trusted."""
    issuer: str
    audience: str
    leeway: timedelta = field(default_factory=lambda: DEFAULT_LEEWAY)
    require_exp: bool = True
    require_sub: bool = True

    def __post_init__(self):
        if not self.issuer:
            raise ConfigurationError("Trusted issuer is required")
        if not self.audience:
            raise ConfigurationError("Expected audience is required")
        if self.leeway < timedelta(0):
            raise ConfigurationError("Clock skew tolerance cannot be negative")


@dataclass
class VerificationResult:
    """Outcome of a non-raising verification."""
    valid: bool
    claims: Optional[Dict[str, Any]] = None
    reason: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    validated_at: datetime = field(default_factory=get_current_time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = {
            'valid': self.valid,
            'validated_at': self.validated_at.isoformat()
        }
        if self.reason is not None:
            result['reason'] = self.reason.value
        if self.error_message is not None:
            result['error_message'] = self.error_message
        return result


def _numeric(claims: Dict[str, Any], name: str) -> Optional[float]:
    value = claims.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ClaimMismatch(name, f"Claim '{name}' must be a NumericDate")
    try:
        number = float(value)
    except OverflowError:
        raise ClaimMismatch(name, f"Claim '{name}' is out of range")
    if not math.isfinite(number):
        raise ClaimMismatch(name, f"Claim '{name}' is out of range")
    return number


class TokenVerifier:
    """Validates compact tokens against a trusted key store and policy."""

    def __init__(self, key_store: KeyStore, policy: VerificationPolicy,
                 engine: Optional[SignatureEngine] = None,
                 codec: Optional[TokenCodec] = None):
        self.key_store = key_store
        self.policy = policy
        self.engine = engine or SignatureEngine()
        self.codec = codec or TokenCodec()

    def verify(self, wire: str, *, nonce: Optional[str] = None,
               now: Optional[Union[datetime, int, float]] = None) -> Dict[str, Any]:
        """
        Verify ``wire`` and return its payload as a trusted claim set.

        Args:
            wire: Compact token.
            nonce: Nonce issued with the authorization request, if any.
            now: Evaluation time; defaults to the current time.

        Raises:
            MalformedToken, BadSignature, ExpiredToken, ClaimMismatch
        """
        at = resolve_now(now)
        token = self.codec.decode(wire)

        # One snapshot for the whole check, so a concurrent rotation cannot
        # hand us half of the old set and half of the new one.
        snapshot = self.key_store.snapshot()
        candidates = snapshot.candidates(token.header, at)
        if not candidates:
            logger.debug(f"No active key for alg={token.algorithm} kid={token.kid}")
            raise BadSignature("No trusted key matches the token")

        verified_with = None
        for key in candidates:
            if self.engine.verify(token.signing_input, token.signature, key):
                verified_with = key
                break
        if verified_with is None:
            raise BadSignature("Signature does not verify under any trusted key")

        claims = token.payload
        self._check_claims(claims, at, nonce)
        logger.debug(f"Token verified with key {verified_with.kid}")
        return dict(claims)

    def check(self, wire: str, *, nonce: Optional[str] = None,
              now: Optional[Union[datetime, int, float]] = None) -> VerificationResult:
        """Verify without raising; rejection details go into the result."""
        try:
            claims = self.verify(wire, nonce=nonce, now=now)
        except AuthPipelineError as e:
            logger.warning(f"Token rejected: {e.diagnostic_code}")
            return VerificationResult(valid=False, reason=e.code, error_message=e.message)
        return VerificationResult(valid=True, claims=claims)

    def _check_claims(self, claims: Dict[str, Any], at: float, nonce: Optional[str]) -> None:
        leeway = self.policy.leeway.total_seconds()

        exp = _numeric(claims, "exp")
        if exp is None:
            if self.policy.require_exp:
                raise ExpiredToken("Token has no expiry")
        elif not exp > at - leeway:
            raise ExpiredToken()

        nbf = _numeric(claims, "nbf")
        if nbf is not None and nbf > at + leeway:
            raise ClaimMismatch("nbf", "Token is not yet valid")

        iat = _numeric(claims, "iat")
        if iat is not None and iat > at + leeway:
            raise ClaimMismatch("iat", "Token was issued in the future")

        iss = claims.get("iss")
        if not isinstance(iss, str) or iss != self.policy.issuer:
            raise ClaimMismatch("iss", "Untrusted issuer")

        aud = claims.get("aud")
        if isinstance(aud, str):
            audiences = [aud]
        elif isinstance(aud, list) and all(isinstance(a, str) for a in aud):
            audiences = aud
        else:
            raise ClaimMismatch("aud", "Audience claim missing or malformed")
        if self.policy.audience not in audiences:
            raise ClaimMismatch("aud", "Token is not intended for this client")

        sub = claims.get("sub")
        if self.policy.require_sub and (not isinstance(sub, str) or not sub):
            raise ClaimMismatch("sub", "Token has no subject")

        azp = claims.get("azp")
        if azp is not None and azp != self.policy.audience:
            raise ClaimMismatch("azp", "Authorized party is not this client")

        if nonce is not None:
            token_nonce = claims.get("nonce")
            if not isinstance(token_nonce, str) or not constant_time_equals(nonce, token_nonce):
                raise ClaimMismatch("nonce", "Nonce does not match the authorization request")
