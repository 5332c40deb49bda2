# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Package crypto provides signing keys, the key store and the signature engine.

This package implements:
- HMAC (HS256/384/512) and asymmetric (RS*, PS*, ES*) signatures over bytes
- Signing keys bound to one algorithm with a validity window
- A copy-on-write key store supporting rotation with a grace period
- Refreshing a provider's published JWKS into a key store
"""

from .keys import (
    KeyFamily,
    SigningKey,
    KeySetSnapshot,
    KeyStore,
    SUPPORTED_ALGORITHMS,
    MIN_RSA_KEY_SIZE,
)

from .signature import (
    SignatureEngine,
    sign,
    verify,
)

from .jwks import (
    JWKSClient,
    parse_jwks,
)

__all__ = [
    'KeyFamily',
    'SigningKey',
    'KeySetSnapshot',
    'KeyStore',
    'SUPPORTED_ALGORITHMS',
    'MIN_RSA_KEY_SIZE',
    'SignatureEngine',
    'sign',
    'verify',
    'JWKSClient',
    'parse_jwks',
]
