# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Signature engine: HMAC and asymmetric signatures over raw bytes.

The engine knows nothing about tokens. It delegates the primitives to PyJWT's
algorithm objects (backed by ``hmac`` and ``cryptography``) and always uses
the algorithm the key was provisioned for.
"""

import hmac
import logging
from typing import Dict

from cryptography.exceptions import InvalidSignature
from jwt.algorithms import Algorithm, get_default_algorithms

from ..errors import UnsupportedAlgorithmError
from .keys import SUPPORTED_ALGORITHMS, SigningKey

logger = logging.getLogger(__name__)


class SignatureEngine:
    """Computes and checks signatures for ``SigningKey`` objects."""

    def __init__(self):
        available = get_default_algorithms()
        self._algorithms: Dict[str, Algorithm] = {
            name: available[name] for name in SUPPORTED_ALGORITHMS if name in available
        }

    def _algorithm_for(self, key: SigningKey) -> Algorithm:
        algorithm = self._algorithms.get(key.algorithm)
        if algorithm is None:
            raise UnsupportedAlgorithmError(
                f"Algorithm {key.algorithm!r} is not available",
                details={"kid": key.kid},
            )
        return algorithm

    def sign(self, payload: bytes, key: SigningKey) -> bytes:
        """Sign ``payload`` with ``key``."""
        algorithm = self._algorithm_for(key)
        if not key.can_sign:
            raise UnsupportedAlgorithmError(
                f"Key {key.kid!r} holds no private material for {key.algorithm} signing",
                details={"kid": key.kid},
            )
        return algorithm.sign(payload, key.material)

    def verify(self, payload: bytes, signature: bytes, key: SigningKey) -> bool:
        """
        Check ``signature`` over ``payload``.

        Returns False for any malformed or mismatching input. Only a key whose
        algorithm the engine cannot handle raises.
        """
        algorithm = self._algorithm_for(key)
        if not isinstance(payload, bytes) or not isinstance(signature, bytes):
            return False

        if key.is_symmetric:
            expected = algorithm.sign(payload, key.material)
            if len(signature) != len(expected):
                return False
            return hmac.compare_digest(signature, expected)

        try:
            return bool(algorithm.verify(payload, key.verification_key, signature))
        except (InvalidSignature, ValueError, TypeError) as e:
            logger.debug(f"Signature check with key {key.kid} failed: {type(e).__name__}")
            return False


_default_engine = SignatureEngine()


def sign(payload: bytes, key: SigningKey) -> bytes:
    """Convenience function to sign with the shared engine."""
    return _default_engine.sign(payload, key)


def verify(payload: bytes, signature: bytes, key: SigningKey) -> bool:
    """Convenience function to verify with the shared engine."""
    return _default_engine.verify(payload, signature, key)
