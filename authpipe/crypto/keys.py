# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Signing keys and the copy-on-write key store.

A ``SigningKey`` binds key material to exactly one algorithm at provisioning
time. Verification always takes the algorithm from the key, so a token header
can narrow the candidate set but can never choose how a signature is checked.

``KeyStore`` holds an immutable ``KeySetSnapshot``. Rotation and provider
refreshes build a new snapshot and swap the reference under a lock; readers
grab the reference once and see a consistent key set for the whole
verification.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwt.algorithms import HMACAlgorithm, get_default_algorithms
from jwt.exceptions import InvalidKeyError, PyJWKError

from ..common.utils import from_timestamp, resolve_now
from ..errors import ConfigurationError, UnsupportedAlgorithmError

logger = logging.getLogger(__name__)


class KeyFamily(Enum):
    """Algorithm family of a signing key."""
    SYMMETRIC = "symmetric"
    ASYMMETRIC = "asymmetric"


# Minimum HMAC secret length equals the digest output size.
HMAC_ALGORITHMS: Dict[str, int] = {"HS256": 32, "HS384": 48, "HS512": 64}
RSA_ALGORITHMS = frozenset({"RS256", "RS384", "RS512", "PS256", "PS384", "PS512"})
EC_ALGORITHMS: Dict[str, str] = {"ES256": "secp256r1", "ES384": "secp384r1", "ES512": "secp521r1"}
SUPPORTED_ALGORITHMS = frozenset(HMAC_ALGORITHMS) | RSA_ALGORITHMS | frozenset(EC_ALGORITHMS)

MIN_RSA_KEY_SIZE = 2048

_DEFAULT_JWK_ALGORITHMS = {"RSA": "RS256", "oct": "HS256"}
_CURVE_ALGORITHMS = {"P-256": "ES256", "P-384": "ES384", "P-521": "ES512"}


@dataclass(frozen=True)
class SigningKey:
    """
    Key material provisioned for a single algorithm with a validity window.

    ``material`` is ``bytes`` for HMAC keys, or a ``cryptography`` private or
    public key object for RSA/EC keys. Private keys can sign and verify;
    public keys can only verify.
    """
    kid: Optional[str]
    algorithm: str
    material: Any = field(repr=False)
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None

    def __post_init__(self):
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithmError(
                f"Unsupported signing algorithm: {self.algorithm!r}",
                details={"kid": self.kid},
            )

        if self.algorithm in HMAC_ALGORITHMS:
            self._check_hmac_material()
        elif self.algorithm in RSA_ALGORITHMS:
            self._check_rsa_material()
        else:
            self._check_ec_material()

        if self.not_before and self.not_after and self.not_after <= self.not_before:
            raise ConfigurationError(f"Key {self.kid!r} has an empty validity window")

    def _check_hmac_material(self) -> None:
        if not isinstance(self.material, bytes):
            raise UnsupportedAlgorithmError(f"{self.algorithm} key material must be bytes")
        minimum = HMAC_ALGORITHMS[self.algorithm]
        if len(self.material) < minimum:
            raise ConfigurationError(
                f"{self.algorithm} secret must be at least {minimum} bytes",
                details={"kid": self.kid},
            )
        try:
            # Refuses PEM/SSH public keys so a public key can never double as an HMAC secret.
            HMACAlgorithm(HMACAlgorithm.SHA256).prepare_key(self.material)
        except InvalidKeyError as e:
            raise ConfigurationError(f"Invalid HMAC secret for key {self.kid!r}: {e}")

    def _check_rsa_material(self) -> None:
        if not isinstance(self.material, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
            raise UnsupportedAlgorithmError(f"{self.algorithm} key material must be an RSA key")
        if self.material.key_size < MIN_RSA_KEY_SIZE:
            raise ConfigurationError(
                f"RSA keys must be at least {MIN_RSA_KEY_SIZE} bits",
                details={"kid": self.kid, "key_size": self.material.key_size},
            )

    def _check_ec_material(self) -> None:
        if not isinstance(self.material, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
            raise UnsupportedAlgorithmError(f"{self.algorithm} key material must be an EC key")
        expected = EC_ALGORITHMS[self.algorithm]
        if self.material.curve.name != expected:
            raise UnsupportedAlgorithmError(
                f"{self.algorithm} requires curve {expected}, got {self.material.curve.name}"
            )

    @property
    def family(self) -> KeyFamily:
        if self.algorithm in HMAC_ALGORITHMS:
            return KeyFamily.SYMMETRIC
        return KeyFamily.ASYMMETRIC

    @property
    def is_symmetric(self) -> bool:
        return self.family is KeyFamily.SYMMETRIC

    @property
    def can_sign(self) -> bool:
        """Whether this key holds private (or shared secret) material."""
        if self.is_symmetric:
            return True
        return isinstance(self.material, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey))

    @property
    def verification_key(self) -> Any:
        """Material used for verification (public half of a key pair)."""
        if self.is_symmetric:
            return self.material
        if isinstance(self.material, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            return self.material.public_key()
        return self.material

    def is_active(self, now: Optional[Union[datetime, int, float]] = None) -> bool:
        """Check whether ``now`` falls inside the key's validity window."""
        at = resolve_now(now)
        if self.not_before is not None and at < self.not_before.timestamp():
            return False
        if self.not_after is not None and at >= self.not_after.timestamp():
            return False
        return True

    def retire_at(self, when: datetime) -> "SigningKey":
        """Return a copy whose validity ends no later than ``when``."""
        if self.not_after is not None and self.not_after <= when:
            return self
        return replace(self, not_after=when)

    def public_jwk(self) -> Dict[str, Any]:
        """Public JWK representation; symmetric keys are never exported."""
        if self.is_symmetric:
            raise ConfigurationError("Symmetric keys cannot be published")
        algorithm = get_default_algorithms()[self.algorithm]
        data = json.loads(algorithm.to_jwk(self.verification_key))
        data["alg"] = self.algorithm
        data["use"] = "sig"
        if self.kid:
            data["kid"] = self.kid
        return data

    @classmethod
    def from_secret(cls, kid: str, secret: Union[str, bytes], algorithm: str = "HS256",
                    not_before: Optional[datetime] = None,
                    not_after: Optional[datetime] = None) -> "SigningKey":
        """Build an HMAC key from a configured secret."""
        if algorithm not in HMAC_ALGORITHMS:
            raise UnsupportedAlgorithmError(f"{algorithm} is not an HMAC algorithm")
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        return cls(kid=kid, algorithm=algorithm, material=secret,
                   not_before=not_before, not_after=not_after)

    @classmethod
    def from_pem(cls, kid: str, pem: Union[str, bytes], algorithm: str = "RS256",
                 password: Optional[bytes] = None,
                 not_before: Optional[datetime] = None,
                 not_after: Optional[datetime] = None) -> "SigningKey":
        """Load an RSA or EC key (private or public) from PEM text."""
        if isinstance(pem, str):
            pem = pem.encode("utf-8")
        try:
            if b"PRIVATE KEY" in pem:
                material = serialization.load_pem_private_key(pem, password=password)
            else:
                material = serialization.load_pem_public_key(pem)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Could not load PEM key {kid!r}: {e}")
        return cls(kid=kid, algorithm=algorithm, material=material,
                   not_before=not_before, not_after=not_after)

    @classmethod
    def from_jwk(cls, data: Mapping[str, Any]) -> "SigningKey":
        """Build a verification key from a JSON Web Key published by a provider."""
        algorithm = data.get("alg") or _infer_jwk_algorithm(data)
        try:
            parsed = jwt.PyJWK(dict(data), algorithm=algorithm)
        except PyJWKError as e:
            raise ConfigurationError(f"Unusable JWK {data.get('kid')!r}: {e}")
        material = parsed.key
        return cls(kid=data.get("kid"), algorithm=algorithm, material=material)


def _infer_jwk_algorithm(data: Mapping[str, Any]) -> str:
    kty = data.get("kty")
    if kty == "EC":
        algorithm = _CURVE_ALGORITHMS.get(data.get("crv"))
    else:
        algorithm = _DEFAULT_JWK_ALGORITHMS.get(kty)
    if algorithm is None:
        raise UnsupportedAlgorithmError(f"Cannot infer algorithm for JWK type {kty!r}")
    return algorithm


@dataclass(frozen=True)
class KeySetSnapshot:
    """Immutable view of the keys trusted at one moment."""
    keys: Tuple[SigningKey, ...] = ()
    current_kid: Optional[str] = None

    def get(self, kid: str) -> Optional[SigningKey]:
        for key in self.keys:
            if key.kid == kid:
                return key
        return None

    def active(self, now: Optional[Union[datetime, int, float]] = None) -> List[SigningKey]:
        at = resolve_now(now)
        return [key for key in self.keys if key.is_active(at)]

    def candidates(self, header: Mapping[str, Any],
                   now: Optional[Union[datetime, int, float]] = None) -> List[SigningKey]:
        """
        Keys that may have produced a token with ``header``.

        The header's ``kid`` narrows by identifier; its ``alg`` must equal the
        algorithm the key was provisioned for. Keys outside their validity
        window are never candidates.
        """
        alg = header.get("alg")
        kid = header.get("kid")
        result = []
        for key in self.active(now):
            if key.algorithm != alg:
                continue
            if kid is not None and key.kid != kid:
                continue
            result.append(key)
        return result


class KeyStore:
    """Thread-safe, copy-on-write holder of a ``KeySetSnapshot``."""

    def __init__(self, keys: Iterable[SigningKey] = (), current_kid: Optional[str] = None):
        self._lock = threading.Lock()
        self._snapshot = self._build(tuple(keys), current_kid)

    @staticmethod
    def _build(keys: Tuple[SigningKey, ...], current_kid: Optional[str]) -> KeySetSnapshot:
        seen = set()
        for key in keys:
            if key.kid is None:
                continue
            if key.kid in seen:
                raise ConfigurationError(f"Duplicate key id: {key.kid!r}")
            seen.add(key.kid)

        if current_kid is not None:
            current = next((k for k in keys if k.kid == current_kid), None)
            if current is None:
                raise ConfigurationError(f"Current key {current_kid!r} is not in the key set")
            if not current.can_sign:
                raise ConfigurationError(f"Current key {current_kid!r} cannot sign")

        return KeySetSnapshot(keys=keys, current_kid=current_kid)

    def snapshot(self) -> KeySetSnapshot:
        """Return the current immutable key set."""
        return self._snapshot

    def install(self, keys: Iterable[SigningKey], current_kid: Optional[str] = None) -> None:
        """Atomically replace the whole key set."""
        snapshot = self._build(tuple(keys), current_kid)
        with self._lock:
            self._snapshot = snapshot
        logger.info(f"Installed key set with {len(snapshot.keys)} keys")

    def add(self, key: SigningKey, make_current: bool = False) -> None:
        """Add a key, optionally making it the signing key."""
        with self._lock:
            old = self._snapshot
            current = key.kid if make_current else old.current_kid
            self._snapshot = self._build(old.keys + (key,), current)
        logger.info(f"Added key {key.kid} ({key.algorithm})")

    def remove(self, kid: str) -> bool:
        """Drop a key by id. The current signing key cannot be removed."""
        with self._lock:
            old = self._snapshot
            if old.current_kid == kid:
                raise ConfigurationError("Cannot remove the current signing key")
            keys = tuple(k for k in old.keys if k.kid != kid)
            if len(keys) == len(old.keys):
                return False
            self._snapshot = self._build(keys, old.current_kid)
        logger.info(f"Removed key {kid}")
        return True

    def rotate(self, new_key: SigningKey, grace: timedelta,
               now: Optional[Union[datetime, int, float]] = None) -> Optional[SigningKey]:
        """
        Make ``new_key`` the signing key.

        The previous signing key stays trusted for verification until
        ``now + grace`` and is then ignored. Returns the retired key.
        """
        if not new_key.can_sign:
            raise ConfigurationError("Rotation requires a key that can sign")
        if new_key.kid is None:
            raise ConfigurationError("Rotated keys must carry a key id")

        retire_at = from_timestamp(resolve_now(now)) + grace
        with self._lock:
            old = self._snapshot
            previous = old.get(old.current_kid) if old.current_kid else None
            keys = []
            for key in old.keys:
                if previous is not None and key is previous:
                    key = key.retire_at(retire_at)
                    previous = key
                keys.append(key)
            keys.append(new_key)
            self._snapshot = self._build(tuple(keys), new_key.kid)

        logger.info(
            f"Rotated signing key to {new_key.kid}; "
            f"previous key {previous.kid if previous else None} trusted until {retire_at.isoformat()}"
        )
        return previous

    def current_key(self, now: Optional[Union[datetime, int, float]] = None) -> SigningKey:
        """Return the active signing key."""
        snapshot = self._snapshot
        if snapshot.current_kid is None:
            raise ConfigurationError("No current signing key configured")
        key = snapshot.get(snapshot.current_kid)
        if key is None or not key.is_active(now):
            raise ConfigurationError(f"Signing key {snapshot.current_kid!r} is not active")
        return key

    def prune(self, now: Optional[Union[datetime, int, float]] = None) -> int:
        """Drop keys whose validity window has ended. Returns how many were removed."""
        at = resolve_now(now)
        with self._lock:
            old = self._snapshot
            keys = tuple(
                k for k in old.keys
                if k.not_after is None or k.not_after.timestamp() > at or k.kid == old.current_kid
            )
            removed = len(old.keys) - len(keys)
            if removed:
                self._snapshot = self._build(keys, old.current_kid)
        if removed:
            logger.debug(f"Pruned {removed} expired keys")
        return removed

    def __len__(self) -> int:
        return len(self._snapshot.keys)
