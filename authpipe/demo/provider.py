"""
Local OpenID Connect provider for the demo and the test suite.

Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

Serves a token endpoint and a JWKS endpoint on 127.0.0.1. There is no login
page: ``approve`` plays the part of a user who consented, and returns the
code and state the browser would carry back to the redirect URI.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from aiohttp import web
from aiohttp.test_utils import TestServer
from cryptography.hazmat.primitives.asymmetric import rsa

from ..common.utils import constant_time_equals
from ..crypto.keys import SigningKey
from ..crypto.signature import SignatureEngine
from ..oauth2.exchanger import pkce_challenge
from ..token.codec import TokenCodec

logger = logging.getLogger(__name__)

CODE_TTL_SECONDS = 60
ID_TOKEN_TTL_SECONDS = 3600


@dataclass
class _Grant:
    client_id: str
    redirect_uri: str
    subject: str
    nonce: Optional[str]
    code_challenge: Optional[str]
    scope: str
    claims: Dict[str, Any] = field(default_factory=dict)
    expires_at: float = 0.0


class FakeProvider:
    """Minimal authorization server for one registered client."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str,
                 signing_key: Optional[SigningKey] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.signing_key = signing_key or SigningKey(
            kid="idp-key-1",
            algorithm="RS256",
            material=rsa.generate_private_key(public_exponent=65537, key_size=2048),
        )
        self.issuer: Optional[str] = None
        self.token_requests = 0
        self._codes: Dict[str, _Grant] = {}
        self._engine = SignatureEngine()
        self._codec = TokenCodec()
        self._server: Optional[TestServer] = None

        self.app = web.Application()
        self.app.router.add_post('/token', self._token)
        self.app.router.add_get('/jwks', self._jwks)

    async def start(self) -> str:
        """Start serving and return the issuer URL."""
        self._server = TestServer(self.app, host='127.0.0.1')
        await self._server.start_server()
        self.issuer = f"http://{self._server.host}:{self._server.port}"
        logger.info(f"Fake provider listening on {self.issuer}")
        return self.issuer

    async def close(self) -> None:
        if self._server is not None:
            await self._server.close()
            self._server = None

    async def __aenter__(self) -> "FakeProvider":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.issuer}/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.issuer}/token"

    @property
    def jwks_uri(self) -> str:
        return f"{self.issuer}/jwks"

    def approve(self, authorization_url: str, subject: str,
                claims: Optional[Dict[str, Any]] = None) -> Tuple[str, str]:
        """
        Consent to ``authorization_url`` on behalf of ``subject``.

        Returns:
            ``(code, state)`` as they would arrive at the redirect URI.
        """
        query = {k: v[0] for k, v in parse_qs(urlparse(authorization_url).query).items()}
        if query.get('response_type') != 'code':
            raise ValueError("Only the authorization-code flow is supported")
        if query.get('client_id') != self.client_id:
            raise ValueError("Unknown client")
        if query.get('redirect_uri') != self.redirect_uri:
            raise ValueError("Redirect URI is not registered")
        if query.get('code_challenge') and query.get('code_challenge_method') != 'S256':
            raise ValueError("Only S256 code challenges are supported")

        code = secrets.token_urlsafe(32)
        self._codes[code] = _Grant(
            client_id=self.client_id,
            redirect_uri=query['redirect_uri'],
            subject=subject,
            nonce=query.get('nonce'),
            code_challenge=query.get('code_challenge'),
            scope=query.get('scope', 'openid'),
            claims=dict(claims or {}),
            expires_at=time.time() + CODE_TTL_SECONDS,
        )
        return code, query.get('state', '')

    def mint_id_token(self, subject: str, nonce: Optional[str] = None,
                      claims: Optional[Dict[str, Any]] = None,
                      key: Optional[SigningKey] = None,
                      now: Optional[int] = None) -> str:
        """Sign an ID token for ``subject``; ``claims`` override the defaults."""
        issued = int(now if now is not None else time.time())
        payload: Dict[str, Any] = {
            'iss': self.issuer,
            'sub': subject,
            'aud': self.client_id,
            'azp': self.client_id,
            'iat': issued,
            'exp': issued + ID_TOKEN_TTL_SECONDS,
        }
        if nonce is not None:
            payload['nonce'] = nonce
        payload.update(claims or {})
        return self.sign(payload, key)

    def sign(self, payload: Dict[str, Any], key: Optional[SigningKey] = None) -> str:
        signing_key = key or self.signing_key
        header = {'alg': signing_key.algorithm, 'typ': 'JWT', 'kid': signing_key.kid}
        signature = self._engine.sign(self._codec.encode_signing_input(header, payload), signing_key)
        return self._codec.encode(header, payload, signature)

    @staticmethod
    def _error(error: str, description: str, status: int = 400) -> web.Response:
        return web.json_response({'error': error, 'error_description': description}, status=status)

    async def _token(self, request: web.Request) -> web.Response:
        self.token_requests += 1
        form = await request.post()

        if form.get('grant_type') != 'authorization_code':
            return self._error('unsupported_grant_type', 'grant_type must be authorization_code')
        if form.get('client_id') != self.client_id or \
                not constant_time_equals(form.get('client_secret'), self.client_secret):
            return self._error('invalid_client', 'client authentication failed', status=401)

        # Codes are single use whether or not the rest of the request is valid.
        grant = self._codes.pop(str(form.get('code', '')), None)
        if grant is None or grant.expires_at < time.time():
            return self._error('invalid_grant', 'unknown, used or expired code')
        if form.get('redirect_uri') != grant.redirect_uri:
            return self._error('invalid_grant', 'redirect_uri does not match')
        if grant.code_challenge:
            verifier = form.get('code_verifier')
            if not verifier or pkce_challenge(str(verifier)) != grant.code_challenge:
                return self._error('invalid_grant', 'PKCE verification failed')

        id_token = self.mint_id_token(grant.subject, nonce=grant.nonce, claims=grant.claims)
        return web.json_response({
            'access_token': secrets.token_urlsafe(32),
            'token_type': 'Bearer',
            'expires_in': ID_TOKEN_TTL_SECONDS,
            'scope': grant.scope,
            'id_token': id_token,
        })

    async def _jwks(self, request: web.Request) -> web.Response:
        return web.json_response({'keys': [self.signing_key.public_jwk()]})
