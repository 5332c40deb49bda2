# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Authorization-code exchange with an OpenID Connect provider.

Only ``response_type=code`` is ever requested. Tokens are obtained over a
server-to-server POST to the token endpoint, and the returned ID token must
pass ``TokenVerifier`` with the nonce of the originating request.
"""

import asyncio
import hashlib
import logging
import secrets
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

import aiohttp

from ..common.utils import constant_time_equals, from_timestamp, resolve_now
from ..errors import (
    ConfigurationError, ErrorCode, ExchangeFailed, StateMismatch,
    TransientNetworkError,
)
from ..resilience.retry import Retry
from ..token.codec import b64url_encode
from ..token.verifier import TokenVerifier
from .types import OPENID_SCOPE, AuthorizationRequest, ExchangeResult, ProviderConfig

logger = logging.getLogger(__name__)

# 32 random bytes -> 256 bits for state and nonce.
STATE_BYTES = 32
NONCE_BYTES = 32
# 64 random bytes -> 86 base64url characters, inside the 43..128 PKCE range.
CODE_VERIFIER_BYTES = 64

RESPONSE_TYPE = "code"
GRANT_TYPE = "authorization_code"

_RESERVED_PARAMS = frozenset({
    "response_type", "client_id", "redirect_uri", "scope", "state", "nonce",
    "code_challenge", "code_challenge_method",
})


def pkce_challenge(code_verifier: str) -> str:
    """S256 code challenge for ``code_verifier``."""
    return b64url_encode(hashlib.sha256(code_verifier.encode("ascii")).digest())


class AuthorizationCodeExchanger:
    """Builds login redirects and redeems authorization codes."""

    def __init__(self, config: ProviderConfig, verifier: TokenVerifier,
                 session: Optional[aiohttp.ClientSession] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        config.validate()
        if verifier.policy.audience != config.client_id:
            raise ConfigurationError("ID-token verifier must expect this client as audience")
        if verifier.policy.issuer != config.issuer:
            raise ConfigurationError("ID-token verifier must trust the configured issuer")
        self.config = config
        self.verifier = verifier
        self._session = session
        self._sleep = sleep

    def build_authorization_url(self, scopes: Optional[Iterable[str]] = None,
                                prompt: Optional[str] = None,
                                login_hint: Optional[str] = None,
                                extra_params: Optional[Mapping[str, str]] = None,
                                now: Optional[Union[datetime, int, float]] = None
                                ) -> Tuple[str, AuthorizationRequest]:
        """
        Build the provider redirect URL and the matching pending request.

        Args:
            scopes: Scopes to request; ``openid`` is always included.
            prompt: Optional OIDC ``prompt`` value (e.g. ``consent``).
            login_hint: Optional account hint passed to the provider.
            extra_params: Additional provider-specific query parameters. They
                cannot override any protocol parameter.

        Returns:
            ``(url, request)``; ``request`` must be kept server-side until the
            callback arrives.
        """
        requested = list(scopes) if scopes is not None else list(self.config.scopes)
        if OPENID_SCOPE not in requested:
            requested.insert(0, OPENID_SCOPE)

        created = from_timestamp(resolve_now(now))
        request = AuthorizationRequest(
            state=secrets.token_urlsafe(STATE_BYTES),
            nonce=secrets.token_urlsafe(NONCE_BYTES),
            redirect_uri=self.config.redirect_uri,
            scopes=tuple(requested),
            code_verifier=secrets.token_urlsafe(CODE_VERIFIER_BYTES) if self.config.use_pkce else None,
            created_at=created,
            expires_at=created + self.config.request_ttl,
        )

        params: Dict[str, str] = {
            'response_type': RESPONSE_TYPE,
            'client_id': self.config.client_id,
            'scope': ' '.join(request.scopes),
            'redirect_uri': request.redirect_uri,
            'state': request.state,
            'nonce': request.nonce,
        }
        # [PKCE]
        if request.code_verifier:
            params['code_challenge'] = pkce_challenge(request.code_verifier)
            params['code_challenge_method'] = 'S256'
        if prompt:
            params['prompt'] = prompt
        if login_hint:
            params['login_hint'] = login_hint
        for name, value in (extra_params or {}).items():
            if name in _RESERVED_PARAMS:
                raise ConfigurationError(f"Parameter {name!r} cannot be overridden")
            params[name] = value

        separator = '&' if '?' in self.config.authorization_endpoint else '?'
        url = f"{self.config.authorization_endpoint}{separator}{urlencode(params)}"
        logger.debug(f"Built authorization URL for scopes {params['scope']!r}")
        return url, request

    async def exchange_code(self, code: str, request: AuthorizationRequest,
                            received_state: Optional[str], *,
                            timeout: Optional[float] = None,
                            now: Optional[Union[datetime, int, float]] = None) -> ExchangeResult:
        """
        Redeem ``code`` and verify the returned ID token.

        The request is consumed before anything else, so neither a replay nor
        a cancelled attempt can use it again.

        Raises:
            StateMismatch: request already used, expired, or state differs.
            ExchangeFailed: provider rejected the code or answered nonsense.
            TransientNetworkError: provider unreachable after retries, or the
                deadline passed.
            MalformedToken, BadSignature, ExpiredToken, ClaimMismatch: the ID
                token failed verification.
        """
        if not request.consume():
            raise StateMismatch("Authorization request was already used", ErrorCode.REQUEST_REPLAYED)
        if request.is_expired(now):
            raise StateMismatch("Authorization request has expired", ErrorCode.REQUEST_EXPIRED)
        if not constant_time_equals(received_state, request.state):
            raise StateMismatch("State does not match the authorization request")
        if not code:
            raise ExchangeFailed("invalid_request", "missing authorization code")

        # [OAuth2] RFC 6749 section 4.1.3
        form = {
            'code': code,
            'client_id': self.config.client_id,
            'client_secret': self.config.client_secret,
            'redirect_uri': request.redirect_uri,
            'grant_type': GRANT_TYPE,
        }
        if request.code_verifier:
            form['code_verifier'] = request.code_verifier

        logger.info("Exchanging authorization code with provider")
        attempt = Retry(self.config.retry, sleep=self._sleep).execute(self._post_token_request, form)
        if timeout is not None:
            try:
                body = await asyncio.wait_for(attempt, timeout=timeout)
            except asyncio.TimeoutError:
                raise TransientNetworkError(f"Code exchange exceeded deadline of {timeout}s")
        else:
            body = await attempt

        claims = self.verifier.verify(body['id_token'], nonce=request.nonce, now=now)
        logger.info("ID token verified")

        return ExchangeResult(
            claims=claims,
            access_token=body['access_token'],
            expires_in=body.get('expires_in'),
            refresh_token=body.get('refresh_token'),
            token_type=body.get('token_type') or "Bearer",
            scope=body.get('scope'),
        )

    async def _post_token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        """Single POST to the token endpoint."""
        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout)
        headers = {'Accept': 'application/json'}
        try:
            if self._session is not None:
                async with self._session.post(self.config.token_endpoint, data=form,
                                              headers=headers, timeout=timeout) as response:
                    return await self._read_token_response(response)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.config.token_endpoint, data=form,
                                        headers=headers) as response:
                    return await self._read_token_response(response)
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"Token endpoint unreachable: {type(e).__name__}")

    @staticmethod
    async def _read_token_response(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        try:
            body = await response.json(content_type=None)
        except (ValueError, RecursionError):
            body = None

        if response.status >= 500 and not (isinstance(body, dict) and 'error' in body):
            raise TransientNetworkError(f"Token endpoint returned {response.status}")

        if not isinstance(body, dict):
            raise ExchangeFailed("invalid_response", "token endpoint did not return a JSON object",
                                 status=response.status)
        if 'error' in body or response.status != 200:
            raise ExchangeFailed(str(body.get('error') or 'http_error'),
                                 body.get('error_description'), status=response.status)

        for name in ('access_token', 'id_token'):
            if not isinstance(body.get(name), str) or not body[name]:
                raise ExchangeFailed("invalid_response", f"missing {name}", status=response.status)

        token_type = body.get('token_type')
        if token_type is not None and str(token_type).lower() != 'bearer':
            raise ExchangeFailed("invalid_response", f"unsupported token_type {token_type!r}")

        expires_in = body.get('expires_in')
        if expires_in is not None:
            try:
                body['expires_in'] = int(expires_in)
            except (TypeError, ValueError):
                raise ExchangeFailed("invalid_response", "expires_in is not an integer")

        return body
