# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Package oauth2 drives the OpenID Connect authorization-code flow.

Protocol Usage Declaration:
  - OAuth 2.0:      USED for the authorization-code grant only (see [OAuth2] comments)
  - PKCE:           SUPPORTED, S256 only (see [PKCE] comments)
  - OpenID:         USED for ID-token nonce binding and the openid scope
  - Implicit flow:  NOT SUPPORTED; response_type is always "code"
"""

from .types import (
    ProviderConfig,
    AuthorizationRequest,
    ExchangeResult,
    OPENID_SCOPE,
)

from .exchanger import (
    AuthorizationCodeExchanger,
    pkce_challenge,
)

from .store import (
    RequestStore,
    MemoryRequestStore,
    RedisRequestStore,
)

__all__ = [
    'ProviderConfig',
    'AuthorizationRequest',
    'ExchangeResult',
    'OPENID_SCOPE',
    'AuthorizationCodeExchanger',
    'pkce_challenge',
    'RequestStore',
    'MemoryRequestStore',
    'RedisRequestStore',
]
