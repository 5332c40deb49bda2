"""
Login pipeline facade for authpipe.

Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

Protocol Usage Declaration:
  - OAuth 2.0:      USED for the authorization-code grant (see [OAuth2] comments below)
  - OpenID Connect: USED for ID-token verification and the nonce binding
  - PKCE:           USED when enabled in ProviderConfig (delegated to the exchanger)
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .config import PipelineConfig
from ..audit.logger import AuditLogger, LoginEvent, LoginEventType
from ..crypto.jwks import JWKSClient
from ..crypto.keys import SigningKey
from ..errors import AuthenticationFailed, AuthPipelineError, ConfigurationError, StateMismatch
from ..oauth2.exchanger import AuthorizationCodeExchanger
from ..oauth2.store import MemoryRequestStore, RequestStore
from ..session.issuer import Session, SessionIssuer
from ..token.verifier import TokenVerifier, VerificationPolicy

logger = logging.getLogger(__name__)


class AuthPipeline:
    """
    Turns a provider callback into a locally trusted session.

    Use AuthPipeline.new() to construct an instance from a ``PipelineConfig``.
    Every failure leaving ``complete_login`` or ``verify_session`` is the same
    opaque ``AuthenticationFailed``; the underlying diagnostic code is logged
    server-side and kept on the exception.
    """

    def __init__(
        self,
        config: PipelineConfig,
        exchanger: AuthorizationCodeExchanger,
        session_issuer: SessionIssuer,
        request_store: Optional[RequestStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        jwks_client: Optional[JWKSClient] = None,
    ):
        self.config = config
        self.exchanger = exchanger
        self.session_issuer = session_issuer
        self.request_store = request_store or MemoryRequestStore()
        self.audit_logger = audit_logger
        self.jwks_client = jwks_client

    @classmethod
    def new(
        cls,
        config: PipelineConfig,
        request_store: Optional[RequestStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "AuthPipeline":
        """
        Wire up a pipeline from configuration.

        Args:
            config: Pipeline configuration
            request_store: Pending-request store (defaults to in-memory)
            audit_logger: Optional login audit trail
            http_session: Optional shared aiohttp session for provider calls
            sleep: Backoff sleep, replaceable in tests

        Raises:
            ConfigurationError: If configuration is invalid

        Example:
            pipeline = AuthPipeline.new(PipelineConfig.from_env())
            url = await pipeline.begin_login()
        """
        config.validate()

        provider_keys = config.build_provider_key_store()
        verifier = TokenVerifier(
            provider_keys,
            VerificationPolicy(
                issuer=config.provider.issuer,
                audience=config.provider.client_id,
                leeway=config.clock_skew,
            ),
        )
        exchanger = AuthorizationCodeExchanger(config.provider, verifier,
                                               session=http_session, sleep=sleep)
        session_issuer = SessionIssuer(config.session, config.build_session_key_store(),
                                       engine=verifier.engine, codec=verifier.codec)

        jwks_client = None
        if config.provider.jwks_uri:
            jwks_client = JWKSClient(
                config.provider.jwks_uri,
                provider_keys,
                cache_ttl=config.jwks_cache_ttl,
                http_timeout=config.provider.http_timeout,
                retry=config.provider.retry,
                session=http_session,
            )

        logger.info(f"Login pipeline ready for client {config.provider.client_id}")
        return cls(config, exchanger, session_issuer, request_store, audit_logger, jwks_client)

    async def begin_login(self, **url_options: Any) -> str:
        """
        Start a login and return the provider URL to redirect the user to.

        ``url_options`` are passed to ``build_authorization_url`` (``scopes``,
        ``prompt``, ``login_hint``, ``extra_params``).
        """
        url, request = self.exchanger.build_authorization_url(**url_options)
        await self.request_store.save(request)
        logger.info("Login started")
        await self._audit(LoginEventType.LOGIN_STARTED)
        return url

    async def complete_login(self, code: str, state: str, *,
                             timeout: Optional[float] = None) -> Session:
        """
        Finish a login from the provider callback parameters.

        Raises:
            AuthenticationFailed: for every rejected attempt.
        """
        try:
            request = await self.request_store.pop(state)
            if request is None:
                raise StateMismatch("No pending authorization request for this state")

            if self.jwks_client is not None:
                await self.jwks_client.ensure_fresh()

            # [OAuth2] authorization-code grant, then ID-token verification
            result = await self.exchanger.exchange_code(code, request, state, timeout=timeout)

            embedded = {
                name: result.claims[name]
                for name in self.config.session.embedded_claims
                if name in result.claims
            }
            session = self.session_issuer.issue(result.subject, embedded)
        except AuthPipelineError as e:
            self._log_failure("Login", e)
            await self._audit(LoginEventType.LOGIN_FAILED, diagnostic_code=e.diagnostic_code)
            raise AuthenticationFailed(e.code) from e

        logger.info(f"Login succeeded; session {session.session_id} issued")
        await self._audit(LoginEventType.LOGIN_SUCCEEDED, subject=session.subject,
                          session_id=session.session_id)
        return session

    async def verify_session(self, wire: str) -> Dict[str, Any]:
        """Verify a session token presented by a client and return its claims."""
        try:
            return self.session_issuer.verify(wire)
        except AuthPipelineError as e:
            self._log_failure("Session", e)
            await self._audit(LoginEventType.SESSION_REJECTED, diagnostic_code=e.diagnostic_code)
            raise AuthenticationFailed(e.code) from e

    async def refresh_provider_keys(self) -> int:
        """Force a JWKS refresh. Returns the number of provider keys installed."""
        if self.jwks_client is None:
            raise ConfigurationError("No jwks_uri configured for the provider")
        count = await self.jwks_client.refresh()
        await self._audit(LoginEventType.KEYS_REFRESHED, details={"keys": count})
        return count

    def rotate_session_key(self, new_key: SigningKey,
                           grace: Optional[timedelta] = None) -> Optional[SigningKey]:
        """Sign new sessions with ``new_key``; existing sessions stay valid for ``grace``."""
        return self.session_issuer.rotate(new_key, grace if grace is not None else self.config.key_grace)

    async def close(self) -> None:
        """Release the request store and audit logger."""
        await self.request_store.close()
        if self.audit_logger is not None:
            await self.audit_logger.close()

    async def __aenter__(self) -> "AuthPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @staticmethod
    def _log_failure(what: str, error: AuthPipelineError) -> None:
        if isinstance(error, ConfigurationError):
            logger.error(f"{what} failed due to configuration: {error.diagnostic_code}")
        else:
            logger.warning(f"{what} rejected: {error.diagnostic_code}")

    async def _audit(self, event_type: LoginEventType, **fields: Any) -> None:
        if self.audit_logger is None:
            return
        await self.audit_logger.log(LoginEvent(
            event_type=event_type,
            client_id=self.config.provider.client_id,
            **fields,
        ))
