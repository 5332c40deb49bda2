# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Package token provides the compact token codec and the token verifier.

Protocol Usage Declaration:
  - OAuth 2.0:      NOT USED anywhere in this package
  - PKCE:           NOT USED anywhere in this package
  - OpenID:         USED for ID-token claim rules (iss, aud, azp, nonce)
"""

from .codec import (
    TokenCodec,
    DecodedToken,
    UnverifiedClaims,
    decode_unverified,
    b64url_encode,
    b64url_decode,
)

from .verifier import (
    TokenVerifier,
    VerificationPolicy,
    VerificationResult,
    DEFAULT_LEEWAY,
)

__all__ = [
    'TokenCodec',
    'DecodedToken',
    'UnverifiedClaims',
    'decode_unverified',
    'b64url_encode',
    'b64url_decode',
    'TokenVerifier',
    'VerificationPolicy',
    'VerificationResult',
    'DEFAULT_LEEWAY',
]
